from __future__ import annotations

import re
from typing import Any, Iterable

from .models import SubjectContext


_EMERGENCY_PATTERNS = [
    re.compile(r"chest pain.*breath", re.IGNORECASE),
    re.compile(r"stroke", re.IGNORECASE),
    re.compile(r"severe bleeding", re.IGNORECASE),
    re.compile(r"anaphylaxis", re.IGNORECASE),
    re.compile(r"overdose", re.IGNORECASE),
    re.compile(r"self[- ]?harm", re.IGNORECASE),
    re.compile(r"suicid", re.IGNORECASE),
]

_URGENT_KEYWORDS = ("emergency", "urgent", "severe", "critical", "immediate")
_HIGH_KEYWORDS = ("pain", "bleeding", "difficulty breathing", "chest pain")
_MEDIUM_KEYWORDS = ("concern", "worried", "problem", "issue")

_CONCERN_KEYWORDS = ("worried", "scared", "pain", "hurt", "problem", "issue", "concern")
_MEDICAL_TERMS = (
    "diagnosis",
    "treatment",
    "medication",
    "symptom",
    "condition",
    "therapy",
    "prescription",
    "examination",
    "test",
    "procedure",
)

HIGH_RISK_MARKERS = {
    "stroke",
    "hemorrhage",
    "intracranial bleed",
    "aneurysm",
    "pulmonary embol",
    "critical",
    "urgent",
    "malignancy",
    "mass effect",
    "sepsis",
    "anaphylaxis",
    "myocardial infarction",
    "troponin",
}

HIGH_RISK_IMAGE_TERMS = (
    "abnormal",
    "lesion",
    "tumor",
    "fracture",
    "inflammation",
    "infection",
    "bleeding",
    "mass",
    "nodule",
    "opacity",
)

_ENTITY_WEIGHTS = {
    "MEDICAL_CONDITION": 0.8,
    "MEDICATION": 0.6,
    "SYMPTOM": 0.7,
}
RISK_CATEGORIES = set(_ENTITY_WEIGHTS)


def is_emergency_text(text: str) -> bool:
    cleaned = (text or "").strip()
    return any(pattern.search(cleaned) for pattern in _EMERGENCY_PATTERNS)


def assess_urgency(message: str) -> str:
    lowered = (message or "").lower()
    if is_emergency_text(lowered) or any(keyword in lowered for keyword in _URGENT_KEYWORDS):
        return "critical"
    if any(keyword in lowered for keyword in _HIGH_KEYWORDS):
        return "high"
    if any(keyword in lowered for keyword in _MEDIUM_KEYWORDS):
        return "medium"
    return "low"


def patient_concerns(message: str) -> list[str]:
    lowered = (message or "").lower()
    return [keyword for keyword in _CONCERN_KEYWORDS if keyword in lowered]


def medical_terms(text: str) -> list[str]:
    lowered = (text or "").lower()
    return [term for term in _MEDICAL_TERMS if term in lowered]


def high_risk_markers(text: str) -> list[str]:
    lowered = (text or "").lower()
    return sorted({marker for marker in HIGH_RISK_MARKERS if marker in lowered})


def _risk_weight(category: str, subject: SubjectContext) -> float:
    weight = _ENTITY_WEIGHTS.get(category, 0.5)
    if subject.age is not None and subject.age > 65:
        weight *= 1.2
    if subject.chronic_conditions:
        weight *= 1.1
    return weight


def risk_factors(entities: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [entity for entity in entities if entity.get("category") in RISK_CATEGORIES]


def entity_risk_score(entities: Iterable[dict[str, Any]], subject: SubjectContext) -> float:
    score = 0.0
    for factor in risk_factors(entities):
        score += float(factor.get("confidence") or 0.0) * 100.0 * _risk_weight(str(factor.get("category")), subject)
    return round(min(score, 100.0), 1)


def is_high_risk_label(label: str) -> bool:
    lowered = (label or "").lower()
    return any(term in lowered for term in HIGH_RISK_IMAGE_TERMS)


def image_risk_score(
    labels: Iterable[dict[str, Any]], aws_labels: Iterable[dict[str, Any]] = ()
) -> float:
    """Google Vision hits weigh 30 points each, Rekognition hits 25, scaled by confidence."""
    score = 0.0
    for weight, group in ((30.0, labels), (25.0, aws_labels)):
        for label in group:
            if is_high_risk_label(str(label.get("label") or "")):
                score += float(label.get("confidence") or 0.0) * weight
    return round(min(score, 100.0), 1)


def risk_band(score: float) -> str:
    if score > 70:
        return "urgent"
    if score > 40:
        return "moderate"
    return "routine"


def reliability_band(average: float) -> str:
    if average > 0.8:
        return "High"
    if average > 0.6:
        return "Medium"
    return "Low"
