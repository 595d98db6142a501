from __future__ import annotations

import base64
import binascii
import re
from pathlib import Path
from typing import Any, Callable

from .models import FALLBACK_SOURCE, SubjectContext
from . import triage


_DEFAULT_FOLLOW_UP_QUESTIONS = [
    "What findings should I discuss first with my clinician?",
    "Do these findings require repeat testing or comparison with prior results?",
    "What warning signs should prompt urgent in-person care?",
]

_DEFAULT_RECOMMENDATIONS = [
    "Review these results with a licensed clinician who knows your history.",
    "Keep a written record of symptoms, including when they start and what makes them worse.",
    "Seek urgent care if you develop chest pain, trouble breathing, confusion, or severe weakness.",
]

_ASSISTANT_APOLOGY = (
    "I'm your HealthHub AI assistant. I'm sorry, but I can't reach the AI service right now, "
    "so I can't give you a detailed answer. For any health concern, please contact your healthcare "
    "provider or our support team, and call emergency services if this is urgent."
)

_NORMAL_IMAGE_LABELS = [
    {"label": "Medical image", "confidence": 0.6},
    {"label": "Healthcare", "confidence": 0.55},
    {"label": "Diagnostic study", "confidence": 0.5},
]

_NORMAL_IMAGE_CONDITIONS = [
    {"condition": "No acute findings identified", "confidence": 0.6},
    {"condition": "Normal study appearance", "confidence": 0.55},
]

# Small lexicon used when entity extraction is unavailable.
_ENTITY_LEXICON = {
    "chest pain": "SYMPTOM",
    "shortness of breath": "SYMPTOM",
    "dizziness": "SYMPTOM",
    "dizzy": "SYMPTOM",
    "fever": "SYMPTOM",
    "nausea": "SYMPTOM",
    "headache": "SYMPTOM",
    "fatigue": "SYMPTOM",
    "cough": "SYMPTOM",
    "sweating": "SYMPTOM",
    "hypertension": "MEDICAL_CONDITION",
    "diabetes": "MEDICAL_CONDITION",
    "asthma": "MEDICAL_CONDITION",
    "pneumonia": "MEDICAL_CONDITION",
    "anemia": "MEDICAL_CONDITION",
    "myocardial infarction": "MEDICAL_CONDITION",
    "aspirin": "MEDICATION",
    "metformin": "MEDICATION",
    "insulin": "MEDICATION",
    "lisinopril": "MEDICATION",
    "atorvastatin": "MEDICATION",
    "ibuprofen": "MEDICATION",
}

_DEMO_TRANSCRIPT_EN = """Medical Consultation Transcription (demonstration)

Doctor: Good morning, how are you feeling today?
Patient: I've been having chest pain and shortness of breath for the past few days.
Doctor: When did these symptoms first start?
Patient: About three days ago, right after I finished exercising.
Doctor: Can you describe the chest pain? Is it sharp, dull, or crushing?
Patient: It's more of a dull ache, and it gets worse when I take deep breaths.
Doctor: Have you experienced any nausea, sweating, or dizziness?
Patient: Yes, I felt a bit dizzy yesterday, and I've been sweating more than usual.
Doctor: I'd like to run some tests including an EKG and chest X-ray to rule out cardiac issues.
Patient: That sounds good. Should I be worried?
Doctor: We're being thorough to ensure your safety. These symptoms warrant investigation.
Patient: I understand. When can we schedule these tests?
Doctor: I'll have my nurse coordinate with you before you leave today.

Status: demonstration transcript. Live speech recognition was unavailable for this request."""

_DEMO_TRANSCRIPT_PT = """Transcrição Médica - Consulta Cardiológica (demonstração)

Doutor: Bom dia, como está se sentindo hoje?
Paciente: Tenho sentido dores no peito e falta de ar nos últimos dias.
Doutor: Quando esses sintomas começaram?
Paciente: Há cerca de três dias, logo após terminar de me exercitar.
Doutor: Pode descrever a dor no peito? É aguda, surda ou opressiva?
Paciente: É mais uma dor surda, e piora quando respiro fundo.
Doutor: Sentiu náusea, suor ou tontura?
Paciente: Sim, senti um pouco de tontura ontem e tenho suado mais que o normal.
Doutor: Gostaria de fazer alguns exames, incluindo ECG e raio-X do tórax.
Paciente: Parece bom. Devo me preocupar?
Doutor: Estamos sendo cuidadosos para garantir sua segurança.
Paciente: Entendo. Quando podemos agendar esses exames?
Doutor: Minha enfermeira vai coordenar com você antes de sair hoje.

Status: transcrição de demonstração. O reconhecimento de fala não estava disponível para esta solicitação."""


def demo_transcript(language: str | None) -> str:
    if (language or "").strip().lower().startswith("pt"):
        return _DEMO_TRANSCRIPT_PT
    return _DEMO_TRANSCRIPT_EN


def _decode_base64(raw: Any) -> bytes:
    if not isinstance(raw, str) or not raw:
        return b""
    try:
        return base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError):
        return b""


def _extract_text_from_pdf_bytes(pdf_bytes: bytes) -> str:
    decoded = pdf_bytes.decode("latin-1", errors="ignore")
    snippets: list[str] = []
    for match in re.finditer(r"\(([^()]{2,300})\)", decoded):
        chunk = match.group(1)
        chunk = chunk.replace("\\n", " ").replace("\\r", " ").replace("\\t", " ").replace("\\)", ")").replace(
            "\\(", "("
        )
        chunk = re.sub(r"\s+", " ", chunk).strip()
        if len(chunk) >= 3 and any(ch.isalpha() for ch in chunk):
            snippets.append(chunk)
    deduped: list[str] = []
    seen: set[str] = set()
    for snippet in snippets:
        lowered = snippet.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        deduped.append(snippet)
        if len(deduped) >= 500:
            break
    return "\n".join(deduped)[:20000]


def extract_document_text_locally(file_name: str, mime_type: str, document_bytes: bytes) -> tuple[str, float, str]:
    ext = Path(file_name or "").suffix.lower()
    if mime_type.startswith("text/") or ext in {".txt", ".csv", ".json", ".md"}:
        text = document_bytes.decode("utf-8", errors="ignore").strip()
        return text, 0.95 if text else 0.0, "direct_text"
    if mime_type == "application/pdf" or ext == ".pdf":
        text = _extract_text_from_pdf_bytes(document_bytes).strip()
        confidence = 0.8 if len(text) > 200 else 0.45 if len(text) > 40 else 0.2
        return text, confidence, "pdf_text_extract"
    if mime_type.startswith("image/") or ext in {".png", ".jpg", ".jpeg", ".webp"}:
        return "", 0.0, "image_no_local_ocr"
    text = document_bytes.decode("utf-8", errors="ignore").strip()
    return text, 0.4 if text else 0.0, "generic_extract"


def lexicon_entities(text: str) -> list[dict[str, Any]]:
    lowered = (text or "").lower()
    entities: list[dict[str, Any]] = []
    for term, category in _ENTITY_LEXICON.items():
        if term in lowered:
            entities.append({"text": term, "category": category, "type": category, "confidence": 0.5})
    return entities


def _first_lines(text: str, limit: int = 3) -> list[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()][:limit]


class FallbackSynthesizer:
    """Deterministic, clearly labeled substitutes for stages whose provider failed."""

    def __init__(self) -> None:
        self._builders: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "extract-text": self._extract_text,
            "extract-entities": self._extract_entities,
            "sentiment": self._sentiment,
            "summarize": self._summarize,
            "risk-score": self._risk_score,
            "recommend": self._recommend,
            "localize": self._localize,
            "label-image": self._label_image,
            "detect-labels": self._detect_labels,
            "interpret-image": self._interpret_image,
            "respond": self._respond,
            "insights": self._insights,
            "follow-up": self._follow_up,
            "speak": self._speak,
            "transcribe": self._transcribe,
        }

    def supports(self, stage_name: str) -> bool:
        return stage_name in self._builders

    def synthesize(self, stage_name: str, stage_input: dict[str, Any]) -> dict[str, Any]:
        builder = self._builders.get(stage_name)
        output = builder(stage_input or {}) if builder else {"note": "No substitute is available for this stage."}
        output["source"] = FALLBACK_SOURCE
        output["stage"] = stage_name
        return output

    def _extract_text(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        document_bytes = _decode_base64(stage_input.get("document_base64"))
        provided = str(stage_input.get("text") or "").strip()
        if not document_bytes and provided:
            text, confidence, method = provided, 0.95, "provided_text"
        else:
            text, confidence, method = extract_document_text_locally(
                str(stage_input.get("file_name") or ""),
                str(stage_input.get("mime_type") or "").lower(),
                document_bytes,
            )
        return {
            "text": text,
            "lines": [{"text": line, "confidence": confidence} for line in _first_lines(text, 200)],
            "confidence": confidence,
            "method": method,
        }

    def _extract_entities(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {"entities": lexicon_entities(str(stage_input.get("text") or ""))}

    def _sentiment(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {
            "sentiment": "NEUTRAL",
            "scores": {"positive": 0.0, "negative": 0.0, "neutral": 0.5, "mixed": 0.0},
            "support_needed": False,
        }

    def _summarize(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        text = str(stage_input.get("text") or "")
        lines = _first_lines(text)
        if lines:
            summary = "Automated summary unavailable. Most visible items: " + " / ".join(line[:160] for line in lines)
        else:
            summary = "Automated summary unavailable and not enough text was extracted to summarize."
        return {"summary": summary, "high_risk_flags": triage.high_risk_markers(text)}

    def _risk_score(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        subject = stage_input.get("subject") or SubjectContext()
        labels = stage_input.get("labels") or []
        aws_labels = stage_input.get("aws_labels") or []
        if labels or aws_labels:
            score = triage.image_risk_score(labels, aws_labels)
            factors = [
                label for label in [*labels, *aws_labels] if triage.is_high_risk_label(str(label.get("label") or ""))
            ]
            method = "image_label_rules"
        else:
            entities = stage_input.get("entities") or []
            score = triage.entity_risk_score(entities, subject)
            factors = triage.risk_factors(entities)
            method = "entity_weight_rules"
        return {
            "overall_risk": score,
            "band": triage.risk_band(score),
            "risk_factors": factors,
            "rationale": f"Rule-based estimate ({method}); model-based scoring was unavailable.",
            "recommendations": [
                f"Monitor {factor.get('text') or factor.get('label')} - Confidence: {float(factor.get('confidence') or 0.0) * 100:.1f}%"
                for factor in factors
            ],
        }

    def _recommend(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        recommendations = list(_DEFAULT_RECOMMENDATIONS)
        band = str(stage_input.get("risk_band") or "routine")
        if band == "urgent":
            recommendations.insert(0, "Arrange a clinical review today; these findings may need urgent attention.")
        return {"recommendations": recommendations}

    def _localize(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {
            "language": stage_input.get("target_language") or "en",
            "original": stage_input.get("text") or "",
            "translated": None,
            "audio_base64": None,
            "voice_id": None,
        }

    def _label_image(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {
            "labels": [dict(label) for label in _NORMAL_IMAGE_LABELS],
            "text_annotations": [],
            "objects": [],
            "detected_conditions": [dict(condition) for condition in _NORMAL_IMAGE_CONDITIONS],
        }

    def _detect_labels(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {"labels": [dict(label) for label in _NORMAL_IMAGE_LABELS]}

    def _interpret_image(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        image_type = stage_input.get("image_type") or "medical image"
        return {
            "interpretation": (
                f"Automated interpretation of this {image_type} is unavailable. "
                "No findings were generated; a clinician should review the study directly."
            )
        }

    def _respond(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {"response": _ASSISTANT_APOLOGY, "tool_calls": []}

    def _insights(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        message = str(stage_input.get("message") or "")
        response = str(stage_input.get("response") or "")
        return {
            "key_phrases": [],
            "sentiment": "NEUTRAL",
            "scores": {"positive": 0.0, "negative": 0.0, "neutral": 0.5, "mixed": 0.0},
            "support_needed": False,
            "patient_concerns": triage.patient_concerns(message),
            "medical_terms": triage.medical_terms(response),
        }

    def _follow_up(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        return {"questions": list(_DEFAULT_FOLLOW_UP_QUESTIONS)}

    def _speak(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        language = stage_input.get("target_language") or "en"
        return {
            "language": language,
            "translated": None,
            "audio_base64": None,
            "voice_id": None,
        }

    def _transcribe(self, stage_input: dict[str, Any]) -> dict[str, Any]:
        language = str(stage_input.get("language") or "en-US")
        return {
            "transcript": demo_transcript(language),
            "confidence": 0.0,
            "language": language,
            "fragment_count": 0,
            "session_state": "stopped",
            "demo": True,
        }
