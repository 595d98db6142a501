from __future__ import annotations

import json
import re
from typing import Any

from . import triage
from .errors import MalformedResponseError
from .models import FALLBACK_SOURCE, PipelineRequest, is_english
from .registry import PipelineDefinition, PipelineRegistry, StageDefinition, StageOutputs


_SAFETY_RULES = (
    "Rules: keep uncertainty explicit, never provide a diagnosis, never claim treatment certainty, "
    "and suggest clinician follow-up."
)

_CONVERSATION_SYSTEM_PROMPT = (
    "You are the HealthHub AI assistant for a healthcare platform. "
    "Help patients understand their health information, find available doctors and book appointments. "
    "Be supportive and concise. Do not diagnose. For urgent symptoms advise contacting emergency services. "
    "Use the available tools to look up doctors or create appointments when the patient asks."
)

_DEFAULT_FOLLOW_UPS = [
    "What findings should I discuss first with my clinician?",
    "Do these findings require repeat testing or comparison with prior results?",
    "What warning signs should prompt urgent in-person care?",
]


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                candidate = text[start_idx : end_idx + 1]
                try:
                    payload = json.loads(candidate)
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def _clean_lines(raw: Any, limit: int) -> list[str]:
    items: list[str] = []
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, str):
                continue
            cleaned = re.sub(r"\s+", " ", item).strip()
            if cleaned:
                items.append(cleaned)
    return items[:limit]


def _list_from_text(text: str, limit: int) -> list[str]:
    lines = []
    for line in (text or "").splitlines():
        cleaned = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if cleaned:
            lines.append(cleaned)
    return lines[:limit]


def normalize_follow_up_questions(raw_questions: Any) -> list[str]:
    questions = _clean_lines(raw_questions, 5)
    while len(questions) < 3:
        questions.append(_DEFAULT_FOLLOW_UPS[len(questions)])
    return questions[:5]


def _completion_text(output: dict[str, Any]) -> str:
    text = str(output.get("text") or "").strip()
    if not text:
        raise MalformedResponseError("Completion provider returned empty text.", provider_id="openai")
    return text


def _stage_output(outputs: StageOutputs, name: str) -> dict[str, Any]:
    return outputs.get(name) or {}


def _user_prompt(lines: list[str]) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": "Provide safe, non-diagnostic medical analysis."},
        {"role": "user", "content": "\n".join(lines)},
    ]


def _needs_localization(request: PipelineRequest) -> bool:
    return not is_english(request.requested_language)


def _localize_input(request: PipelineRequest, text: str) -> dict[str, Any]:
    return {"text": text, "target_language": request.requested_language, "synthesize": False}


def _entities_input(_request: PipelineRequest, text: str) -> dict[str, Any]:
    return {"text": text[:20000], "operations": ["entities"]}


# Shared stages


def _normalize_entities(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    entities = output.get("entities")
    if not isinstance(entities, list):
        raise MalformedResponseError("Clinical NLP returned no entity list.", provider_id="aws-ai")
    return {"entities": entities}


def _normalize_summary(output: dict[str, Any], stage_input: dict[str, Any]) -> dict[str, Any]:
    summary = _completion_text(output)
    flags = triage.high_risk_markers(f"{stage_input.get('text') or ''}\n{summary}")
    return {"summary": summary, "high_risk_flags": flags}


def _summarize_input(text: str, *, label: str) -> dict[str, Any]:
    lines = [
        "You are a clinical documentation assistant.",
        f"Summarize the following {label} in plain language for a patient in at most six sentences.",
        _SAFETY_RULES,
    ]
    if text:
        lines.append(f"{label}:")
        lines.append(text[:12000])
    else:
        lines.append("No text was extracted.")
    return {"messages": _user_prompt(lines), "temperature": 0.1, "text": text}


def _normalize_risk(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    parsed = extract_json_object(_completion_text(output))
    if parsed is None:
        raise MalformedResponseError("Risk scoring returned non-JSON output.", provider_id="openai")
    try:
        score = float(parsed.get("overall_risk"))
    except (TypeError, ValueError) as exc:
        raise MalformedResponseError("Risk scoring returned no numeric overall_risk.", provider_id="openai") from exc
    score = round(max(0.0, min(score, 100.0)), 1)
    factors = parsed.get("risk_factors")
    return {
        "overall_risk": score,
        "band": triage.risk_band(score),
        "risk_factors": factors if isinstance(factors, list) else [],
        "rationale": str(parsed.get("rationale") or "").strip(),
        "recommendations": _clean_lines(parsed.get("recommendations"), 8),
    }


def _risk_input(request: PipelineRequest, findings: dict[str, Any]) -> dict[str, Any]:
    subject = request.subject_context
    lines = [
        "You are a clinical risk triage assistant.",
        "Return JSON only with keys: overall_risk (number 0-100), risk_factors (list of strings), rationale, recommendations (list of strings).",
        _SAFETY_RULES,
        f"patient: {subject.describe()}",
    ]
    if subject.chronic_conditions:
        lines.append(f"chronic_conditions: {', '.join(subject.chronic_conditions)}")
    lines.append("findings JSON:")
    lines.append(json.dumps(findings, ensure_ascii=True, default=str)[:8000])
    stage_input = {"messages": _user_prompt(lines), "temperature": 0.1, "subject": subject}
    stage_input.update(findings)
    return stage_input


def _normalize_recommendations(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    text = _completion_text(output)
    parsed = extract_json_object(text)
    recommendations = _clean_lines(parsed.get("recommendations"), 8) if parsed else _list_from_text(text, 8)
    if not recommendations:
        raise MalformedResponseError("Recommendation stage returned no items.", provider_id="openai")
    return {"recommendations": recommendations}


def _recommend_input(request: PipelineRequest, outputs: StageOutputs, context: str) -> dict[str, Any]:
    risk = _stage_output(outputs, "risk-score")
    band = risk.get("band") or "routine"
    lines = [
        "You are a care navigation assistant.",
        'Return JSON only: {"recommendations": [up to five short, actionable next steps]}.',
        _SAFETY_RULES,
        f"patient: {request.subject_context.describe()}",
        f"risk_band: {band}",
        f"overall_risk: {risk.get('overall_risk')}",
        f"context: {context[:4000]}",
    ]
    return {"messages": _user_prompt(lines), "temperature": 0.2, "risk_band": band}


def _normalize_localized(output: dict[str, Any], stage_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "language": output.get("language") or stage_input.get("target_language"),
        "original": stage_input.get("text") or "",
        "translated": output.get("translated"),
        "audio_base64": output.get("audio_base64"),
        "voice_id": output.get("voice_id"),
    }


def _is_degraded(output: dict[str, Any]) -> bool:
    return output.get("source") == FALLBACK_SOURCE


# Document pipeline


def _document_extract_input(request: PipelineRequest, _outputs: StageOutputs) -> dict[str, Any]:
    payload = request.input_payload
    return {
        "document_base64": payload.get("document_base64") or "",
        "text": payload.get("text") or "",
        "file_name": payload.get("file_name") or "document",
        "mime_type": str(payload.get("mime_type") or "application/octet-stream").lower(),
    }


def _document_text(outputs: StageOutputs) -> str:
    return str(_stage_output(outputs, "extract-text").get("text") or "")


def _document_findings(outputs: StageOutputs) -> dict[str, Any]:
    return {
        "entities": _stage_output(outputs, "extract-entities").get("entities") or [],
        "sentiment": _stage_output(outputs, "sentiment").get("sentiment"),
        "summary": _stage_output(outputs, "summarize").get("summary") or "",
    }


def _normalize_sentiment(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    sentiment = output.get("sentiment")
    if not sentiment:
        raise MalformedResponseError("Sentiment analysis returned no label.", provider_id="aws-ai")
    scores = output.get("scores") or {}
    return {
        "sentiment": sentiment,
        "scores": scores,
        "support_needed": sentiment == "NEGATIVE",
    }


def _finalize_document(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    extracted = _stage_output(outputs, "extract-text")
    risk = _stage_output(outputs, "risk-score")
    summary = _stage_output(outputs, "summarize")
    confidence = float(extracted.get("confidence") or 0.0)
    return {
        "document_type": request.input_payload.get("document_type") or "medical_document",
        "extraction": {
            "method": extracted.get("method"),
            "confidence": confidence,
            "line_count": len(extracted.get("lines") or []),
        },
        "summary": summary.get("summary") or "",
        "high_risk_flags": summary.get("high_risk_flags") or [],
        "entities": _stage_output(outputs, "extract-entities").get("entities") or [],
        "sentiment": _stage_output(outputs, "sentiment").get("sentiment"),
        "risk": {
            "overall_risk": risk.get("overall_risk"),
            "band": risk.get("band"),
            "risk_factors": risk.get("risk_factors") or [],
            "rationale": risk.get("rationale") or "",
        },
        "recommendations": _stage_output(outputs, "recommend").get("recommendations") or [],
        "localized": outputs.get("localize"),
        "reliability": triage.reliability_band(confidence),
    }


def document_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        kind="document",
        stages=(
            StageDefinition("extract-text", "ocr", _document_extract_input),
            StageDefinition(
                "extract-entities",
                "clinical-nlp",
                lambda request, outputs: _entities_input(request, _document_text(outputs)),
                normalize=_normalize_entities,
            ),
            StageDefinition(
                "sentiment",
                "clinical-nlp",
                lambda request, outputs: {"text": _document_text(outputs)[:5000], "operations": ["sentiment"]},
                normalize=_normalize_sentiment,
            ),
            StageDefinition(
                "summarize",
                "completion",
                lambda request, outputs: _summarize_input(_document_text(outputs), label="medical document"),
                normalize=_normalize_summary,
            ),
            StageDefinition(
                "risk-score",
                "completion",
                lambda request, outputs: _risk_input(request, _document_findings(outputs)),
                normalize=_normalize_risk,
            ),
            StageDefinition(
                "recommend",
                "completion",
                lambda request, outputs: _recommend_input(
                    request, outputs, _stage_output(outputs, "summarize").get("summary") or ""
                ),
                normalize=_normalize_recommendations,
            ),
            StageDefinition(
                "localize",
                "speech-out",
                lambda request, outputs: _localize_input(
                    request, _stage_output(outputs, "summarize").get("summary") or ""
                ),
                normalize=_normalize_localized,
                applies=_needs_localization,
            ),
        ),
        finalize=_finalize_document,
    )


# Image pipeline


def _image_label_input(request: PipelineRequest, _outputs: StageOutputs) -> dict[str, Any]:
    payload = request.input_payload
    return {
        "image_base64": payload.get("image_base64") or "",
        "image_url": payload.get("image_url") or "",
        "max_results": int(payload.get("max_results") or 10),
    }


def _normalize_labels(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    labels = output.get("labels")
    if not isinstance(labels, list):
        raise MalformedResponseError("Vision provider returned no labels.", provider_id="google-vision")
    conditions = [
        {"condition": label.get("label"), "confidence": label.get("confidence")}
        for label in labels
        if triage.is_high_risk_label(str(label.get("label") or ""))
    ]
    return {
        "labels": labels,
        "text_annotations": output.get("text_annotations") or [],
        "objects": output.get("objects") or [],
        "detected_conditions": conditions,
    }


def _normalize_aws_labels(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    labels = output.get("labels")
    if not isinstance(labels, list):
        raise MalformedResponseError("Rekognition returned no labels.", provider_id="aws-ai")
    return {"labels": labels}


def _image_labels(outputs: StageOutputs) -> list[dict[str, Any]]:
    return _stage_output(outputs, "label-image").get("labels") or []


def _aws_labels(outputs: StageOutputs) -> list[dict[str, Any]]:
    return _stage_output(outputs, "detect-labels").get("labels") or []


def _label_names(labels: list[dict[str, Any]], limit: int = 5) -> str:
    return ", ".join(str(label.get("label") or "") for label in labels[:limit]) or "none"


def _interpret_input(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    image_type = request.input_payload.get("image_type") or "medical image"
    labeled = _stage_output(outputs, "label-image")
    lines = [
        "You are a medical imaging assistant.",
        f"Explain what these automated detections may indicate on a {image_type}, in plain language.",
        _SAFETY_RULES,
        f"patient: {request.subject_context.describe()}",
        f"google_vision_labels: {_label_names(_image_labels(outputs))}",
        f"aws_rekognition_labels: {_label_names(_aws_labels(outputs))}",
        f"objects: {json.dumps(labeled.get('objects') or [], ensure_ascii=True)}",
    ]
    if labeled.get("text_annotations"):
        lines.append(f"visible_text: {' '.join(str(item) for item in labeled['text_annotations'])[:1000]}")
    return {"messages": _user_prompt(lines), "temperature": 0.2, "image_type": image_type}


def _normalize_interpretation(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    return {"interpretation": _completion_text(output)}


def _top_confidence(labels: list[dict[str, Any]]) -> float:
    return float(labels[0].get("confidence") or 0.0) if labels else 0.0


def _image_confidence(outputs: StageOutputs) -> dict[str, Any]:
    google = _top_confidence(_image_labels(outputs))
    aws = _top_confidence(_aws_labels(outputs))
    risk = float(_stage_output(outputs, "risk-score").get("overall_risk") or 0.0)
    return {
        "google_vision_confidence": google,
        "aws_rekognition_confidence": aws,
        "composite_confidence": round((google + aws) / 2, 3),
        "risk_assessment_confidence": 0.8 if risk > 50 else 0.6,
        "reliability": triage.reliability_band((google + aws + risk / 100.0) / 3),
    }


def _finalize_image(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    labeled = _stage_output(outputs, "label-image")
    risk = _stage_output(outputs, "risk-score")
    return {
        "image_type": request.input_payload.get("image_type") or "medical image",
        "labels": labeled.get("labels") or [],
        "aws_labels": _aws_labels(outputs),
        "objects": labeled.get("objects") or [],
        "detected_conditions": labeled.get("detected_conditions") or [],
        "interpretation": _stage_output(outputs, "interpret-image").get("interpretation") or "",
        "risk": {
            "overall_risk": risk.get("overall_risk"),
            "band": risk.get("band"),
            "risk_factors": risk.get("risk_factors") or [],
            "rationale": risk.get("rationale") or "",
            "label_rule_score": triage.image_risk_score(_image_labels(outputs), _aws_labels(outputs)),
        },
        "recommendations": _stage_output(outputs, "recommend").get("recommendations") or [],
        "confidence": _image_confidence(outputs),
        "localized": outputs.get("localize"),
    }


def image_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        kind="image",
        stages=(
            StageDefinition("label-image", "vision", _image_label_input, normalize=_normalize_labels),
            StageDefinition("detect-labels", "image-labels", _image_label_input, normalize=_normalize_aws_labels),
            StageDefinition("interpret-image", "completion", _interpret_input, normalize=_normalize_interpretation),
            StageDefinition(
                "risk-score",
                "completion",
                lambda request, outputs: _risk_input(
                    request,
                    {
                        "labels": _image_labels(outputs),
                        "aws_labels": _aws_labels(outputs),
                        "interpretation": _stage_output(outputs, "interpret-image").get("interpretation") or "",
                    },
                ),
                normalize=_normalize_risk,
            ),
            StageDefinition(
                "recommend",
                "completion",
                lambda request, outputs: _recommend_input(
                    request, outputs, _stage_output(outputs, "interpret-image").get("interpretation") or ""
                ),
                normalize=_normalize_recommendations,
            ),
            StageDefinition(
                "localize",
                "speech-out",
                lambda request, outputs: _localize_input(
                    request, _stage_output(outputs, "interpret-image").get("interpretation") or ""
                ),
                normalize=_normalize_localized,
                applies=_needs_localization,
            ),
        ),
        finalize=_finalize_image,
    )


# Conversation pipeline


def _conversation_message(request: PipelineRequest) -> str:
    return str(request.input_payload.get("message") or "").strip()


def _respond_input(request: PipelineRequest, _outputs: StageOutputs) -> dict[str, Any]:
    message = _conversation_message(request)
    messages: list[dict[str, Any]] = [
        {
            "role": "system",
            "content": f"{_CONVERSATION_SYSTEM_PROMPT}\nPatient context: {request.subject_context.describe()}",
        }
    ]
    history = request.input_payload.get("history") or []
    if isinstance(history, list):
        for turn in history[-10:]:
            if not isinstance(turn, dict):
                continue
            role = str(turn.get("role") or "").strip().lower()
            content = str(turn.get("content") or "").strip()
            if role in {"user", "assistant"} and content:
                messages.append({"role": role, "content": content[:1200]})
    messages.append({"role": "user", "content": message[:2000]})
    return {
        "messages": messages,
        "temperature": 0.35,
        "use_tools": True,
        "message": message,
        "patient_id": request.input_payload.get("patient_id"),
    }


def _normalize_response(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    return {"response": _completion_text(output), "tool_calls": output.get("tool_calls") or []}


def _insights_input(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    message = _conversation_message(request)
    return {
        "text": message[:5000],
        "operations": ["key_phrases", "sentiment"],
        "language_code": request.requested_language,
        "message": message,
        "response": _stage_output(outputs, "respond").get("response") or "",
    }


def _normalize_insights(output: dict[str, Any], stage_input: dict[str, Any]) -> dict[str, Any]:
    sentiment = output.get("sentiment")
    if not sentiment:
        raise MalformedResponseError("Insight analysis returned no sentiment.", provider_id="aws-ai")
    return {
        "key_phrases": output.get("key_phrases") or [],
        "sentiment": sentiment,
        "scores": output.get("scores") or {},
        "support_needed": sentiment == "NEGATIVE",
        "patient_concerns": triage.patient_concerns(str(stage_input.get("message") or "")),
        "medical_terms": triage.medical_terms(str(stage_input.get("response") or "")),
    }


def _follow_up_input(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    lines = [
        "Suggest three short follow-up questions the patient could ask next.",
        'Return JSON only: {"questions": [...]}.',
        f"patient_message: {_conversation_message(request)[:1000]}",
        f"assistant_reply: {str(_stage_output(outputs, 'respond').get('response') or '')[:2000]}",
    ]
    return {"messages": _user_prompt(lines), "temperature": 0.4}


def _normalize_follow_up(output: dict[str, Any], _stage_input: dict[str, Any]) -> dict[str, Any]:
    text = _completion_text(output)
    parsed = extract_json_object(text)
    raw = parsed.get("questions") if parsed else _list_from_text(text, 5)
    return {"questions": normalize_follow_up_questions(raw)}


def _speak_input(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    return {
        "text": _stage_output(outputs, "respond").get("response") or "",
        "target_language": request.requested_language,
        "synthesize": True,
    }


def _normalize_speech(output: dict[str, Any], stage_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "language": output.get("language") or stage_input.get("target_language"),
        "translated": output.get("translated"),
        "audio_base64": output.get("audio_base64"),
        "voice_id": output.get("voice_id"),
    }


def _finalize_conversation(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    message = _conversation_message(request)
    respond = _stage_output(outputs, "respond")
    return {
        "response": respond.get("response") or "",
        "tool_calls": respond.get("tool_calls") or [],
        "urgency": triage.assess_urgency(message),
        "emergency": triage.is_emergency_text(message),
        "insights": outputs.get("insights") or {},
        "follow_up_questions": _stage_output(outputs, "follow-up").get("questions") or [],
        "speech": outputs.get("speak"),
    }


def conversation_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        kind="conversation",
        stages=(
            StageDefinition("respond", "completion", _respond_input, normalize=_normalize_response),
            StageDefinition("insights", "clinical-nlp", _insights_input, normalize=_normalize_insights),
            StageDefinition("follow-up", "completion", _follow_up_input, normalize=_normalize_follow_up),
            StageDefinition("speak", "speech-out", _speak_input, normalize=_normalize_speech),
        ),
        finalize=_finalize_conversation,
    )


# Transcription pipeline


def _speech_language(request: PipelineRequest) -> str:
    explicit = str(request.input_payload.get("language") or "").strip()
    if explicit:
        return explicit
    requested = (request.requested_language or "en").strip()
    if "-" in requested:
        return requested
    return {"en": "en-US", "pt": "pt-BR", "es": "es-ES", "fr": "fr-FR", "de": "de-DE", "it": "it-IT"}.get(
        requested.lower(), "en-US"
    )


def _transcribe_input(request: PipelineRequest, _outputs: StageOutputs) -> dict[str, Any]:
    return {
        "audio_base64": request.input_payload.get("audio_base64") or "",
        "language": _speech_language(request),
    }


def _transcript(outputs: StageOutputs) -> str:
    return str(_stage_output(outputs, "transcribe").get("transcript") or "")


def _finalize_transcription(request: PipelineRequest, outputs: StageOutputs) -> dict[str, Any]:
    transcribed = _stage_output(outputs, "transcribe")
    return {
        "transcript": transcribed.get("transcript") or "",
        "language": transcribed.get("language") or _speech_language(request),
        "demo": bool(transcribed.get("demo")) or _is_degraded(transcribed),
        "session_state": transcribed.get("session_state"),
        "entities": _stage_output(outputs, "extract-entities").get("entities") or [],
        "summary": _stage_output(outputs, "summarize").get("summary") or "",
        "high_risk_flags": _stage_output(outputs, "summarize").get("high_risk_flags") or [],
        "localized": outputs.get("localize"),
    }


def transcription_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        kind="transcription",
        stages=(
            StageDefinition("transcribe", "speech-to-text", _transcribe_input),
            StageDefinition(
                "extract-entities",
                "clinical-nlp",
                lambda request, outputs: _entities_input(request, _transcript(outputs)),
                normalize=_normalize_entities,
            ),
            StageDefinition(
                "summarize",
                "completion",
                lambda request, outputs: _summarize_input(_transcript(outputs), label="consultation transcript"),
                normalize=_normalize_summary,
            ),
            StageDefinition(
                "localize",
                "speech-out",
                lambda request, outputs: _localize_input(
                    request, _stage_output(outputs, "summarize").get("summary") or ""
                ),
                normalize=_normalize_localized,
                applies=_needs_localization,
            ),
        ),
        finalize=_finalize_transcription,
    )


_ALIASES = {
    "doc": "document",
    "imaging": "image",
    "chat": "conversation",
    "speech": "transcription",
}


def build_default_registry() -> PipelineRegistry:
    registry = PipelineRegistry()
    for pipeline in (document_pipeline(), image_pipeline(), conversation_pipeline(), transcription_pipeline()):
        registry.register(pipeline)
    for alias, target in _ALIASES.items():
        registry.add_alias(alias, target)
    return registry
