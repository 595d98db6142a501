#!/usr/bin/env python3
from __future__ import annotations

import base64
import importlib
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  pipeline_kind: str
  input_payload: dict[str, Any]
  requested_language: str = "en"
  subject_context: dict[str, Any] = field(default_factory=dict)


def stage_summary(envelope: dict[str, Any]) -> list[dict[str, Any]]:
  rows: list[dict[str, Any]] = []
  for stage in envelope.get("stages") or []:
    if not isinstance(stage, dict):
      continue
    detail = stage.get("error_detail") or {}
    rows.append(
      {
        "stage": stage.get("stage_name"),
        "status": stage.get("status"),
        "latency_ms": stage.get("provider_latency_ms"),
        "source": (stage.get("output") or {}).get("source"),
        "error_kind": detail.get("kind"),
      }
    )
  return rows


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Smoke runs never write into the service database.
  os.environ.setdefault("HEALTHHUB_DB_PATH", str(repo_root / ".smoke-runs.sqlite"))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  note = (
    "Patient: 58 year old male.\n"
    "Complaint: intermittent chest pain on exertion for two weeks, mild shortness of breath.\n"
    "History: hypertension, type 2 diabetes. Medications: metformin 500 mg, lisinopril 10 mg.\n"
    "Plan: ECG, troponin, lipid panel. Follow up in one week."
  )
  scenarios = [
    Scenario(
      name="Clinical Note Analysis",
      pipeline_kind="document",
      input_payload={
        "document_base64": base64.b64encode(note.encode("utf-8")).decode("ascii"),
        "file_name": "note.txt",
        "mime_type": "text/plain",
      },
      subject_context={"age": 58, "gender": "male", "chronic_conditions": ["hypertension", "diabetes"]},
    ),
    Scenario(
      name="Localized Clinical Note Analysis",
      pipeline_kind="document",
      input_payload={"text": note},
      requested_language="pt",
    ),
    Scenario(
      name="Chest X-ray Labeling",
      pipeline_kind="image",
      input_payload={
        "image_url": os.getenv("SMOKE_IMAGE_URL", "https://upload.wikimedia.org/wikipedia/commons/a/a1/Normal_posteroanterior_%28PA%29_chest_radiograph_%28X-ray%29.jpg"),
        "image_type": "chest X-ray",
      },
    ),
    Scenario(
      name="Patient Conversation",
      pipeline_kind="conversation",
      input_payload={"message": "I've had a headache for three days and I'm worried. Which doctors are available?"},
    ),
  ]
  audio_path = os.getenv("SMOKE_AUDIO_WAV")
  if audio_path:
    scenarios.append(
      Scenario(
        name="Consultation Transcription",
        pipeline_kind="transcription",
        input_payload={
          "audio_base64": base64.b64encode(Path(audio_path).read_bytes()).decode("ascii"),
          "language": os.getenv("SMOKE_AUDIO_LANGUAGE", "en-US"),
        },
      )
    )

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    for scenario in scenarios:
      response = client.post(
        f"/analyze/{scenario.pipeline_kind}",
        json={
          "input_payload": scenario.input_payload,
          "subject_context": scenario.subject_context,
          "requested_language": scenario.requested_language,
        },
      )
      scenario_result: dict[str, Any] = {
        "name": scenario.name,
        "pipeline_kind": scenario.pipeline_kind,
        "status_code": response.status_code,
      }
      try:
        body = response.json()
      except ValueError:
        body = {"raw": response.text[:500]}

      if response.status_code != 200:
        scenario_result["pass"] = False
        scenario_result["error"] = json.dumps(body.get("error") or body.get("detail") or body, ensure_ascii=True)
        results.append(scenario_result)
        continue

      scenario_result["overall_degradation"] = body.get("overall_degradation")
      scenario_result["stages"] = stage_summary(body)
      scenario_result["final_output"] = body.get("final_output")
      # A run passes when every stage produced output; degradation is reported, not failed.
      scenario_result["pass"] = all(row["status"] in {"ok", "degraded"} for row in scenario_result["stages"])
      if not scenario_result["pass"]:
        scenario_result["error"] = "At least one stage failed outright."
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Pipeline Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- HEALTHHUB_ENV: `{os.getenv('HEALTHHUB_ENV', 'dev')}`",
    f"- HEALTHHUB_SECRETS_BACKEND: `{os.getenv('HEALTHHUB_SECRETS_BACKEND', 'aws')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Pipeline: `{item.get('pipeline_kind')}`")
    report_lines.append(f"- Status code: `{item.get('status_code')}`")
    report_lines.append(f"- Overall degradation: `{item.get('overall_degradation')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    for row in item.get("stages") or []:
      report_lines.append(
        f"- `{row['stage']}`: {row['status']} ({row['latency_ms']} ms, source={row['source']}, error={row['error_kind']})"
      )
    if item.get("final_output") is not None:
      report_lines.append("- Final output:")
      report_lines.append("```json")
      report_lines.append(json.dumps(item.get("final_output"), indent=2, ensure_ascii=True)[:4000])
      report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "PIPELINE_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
