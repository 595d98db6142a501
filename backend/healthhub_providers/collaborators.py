from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from healthhub_ai_core.logging import get_logger, log_with_context

logger = get_logger(__name__)


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_available_doctors",
            "description": "Get a list of available doctors",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_appointment",
            "description": "Create a new appointment",
            "parameters": {
                "type": "object",
                "properties": {
                    "doctorId": {"type": "string"},
                    "dateTime": {"type": "string", "format": "date-time"},
                },
                "required": ["doctorId", "dateTime"],
            },
        },
    },
]


class CollaboratorClient:
    """Doctor directory and appointment booking calls made on behalf of completion tool calls."""

    def __init__(
        self,
        *,
        doctor_service_url: str,
        appointment_service_url: str,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.doctor_service_url = doctor_service_url.rstrip("/")
        self.appointment_service_url = appointment_service_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds, connect=min(3.0, self.timeout_seconds)),
            transport=self._transport,
        )

    def list_doctors(self) -> list[dict[str, Any]]:
        if not self.doctor_service_url:
            raise RuntimeError("Doctor directory is not configured.")
        with self._client() as client:
            response = client.get(f"{self.doctor_service_url}/doctors")
        response.raise_for_status()
        payload = response.json()
        rows = payload.get("doctors") if isinstance(payload, dict) else payload
        doctors: list[dict[str, Any]] = []
        for row in rows or []:
            if not isinstance(row, dict):
                continue
            doctors.append(
                {
                    "id": row.get("id") or row.get("doctorId"),
                    "name": row.get("name") or " ".join(
                        part for part in (row.get("firstName"), row.get("lastName")) if part
                    ),
                    "specialty": row.get("specialty") or row.get("specialization"),
                    "registration_number": row.get("registrationNumber") or row.get("registration_number"),
                }
            )
        return doctors

    def create_appointment(self, *, doctor_id: str, date_time: str, patient_id: str | None) -> dict[str, Any]:
        if not self.appointment_service_url:
            raise RuntimeError("Appointment booking is not configured.")
        body = {"doctorId": doctor_id, "dateTime": date_time, "patientId": patient_id, "status": "scheduled"}
        with self._client() as client:
            response = client.post(f"{self.appointment_service_url}/appointments", json=body)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {"appointment": payload}

    def run_tool(self, name: str, raw_arguments: str | None, *, patient_id: str | None = None) -> str:
        try:
            arguments = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError:
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}

        try:
            if name == "get_available_doctors":
                return f"Available doctors: {json.dumps(self.list_doctors(), ensure_ascii=True)}"
            if name == "create_appointment":
                doctor_id = str(arguments.get("doctorId") or "").strip()
                date_time = str(arguments.get("dateTime") or "").strip()
                if not doctor_id or not date_time:
                    return "Insufficient information to create appointment"
                appointment = self.create_appointment(doctor_id=doctor_id, date_time=date_time, patient_id=patient_id)
                return f"Appointment created: {json.dumps(appointment, ensure_ascii=True)}"
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            log_with_context(logger, logging.WARNING, "collaborator call failed", tool=name, error=str(exc))
            return f"The {name} tool is unavailable right now ({exc}). Tell the patient to try again later."
        return f"Unknown tool: {name}"
