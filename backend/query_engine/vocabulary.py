from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache


class ResourceType(str, Enum):
    PATIENT = "Patient"
    ENCOUNTER = "Encounter"
    OBSERVATION = "Observation"
    MEDICATION_STATEMENT = "MedicationStatement"
    CONDITION = "Condition"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"
    IMMUNIZATION = "Immunization"
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    DOCUMENT_REFERENCE = "DocumentReference"
    FAMILY_MEMBER_HISTORY = "FamilyMemberHistory"
    PROCEDURE = "Procedure"

    @property
    def date_path(self) -> str:
        return _DATE_PATHS[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def is_high_volume(self) -> bool:
        return self in HIGH_VOLUME_TYPES

    @classmethod
    def parse(cls, value: str) -> "ResourceType | None":
        candidate = value.strip().lower()
        for member in cls:
            if member.value.lower() == candidate:
                return member
        return None


_DATE_PATHS: dict[ResourceType, str] = {
    ResourceType.PATIENT: "meta.lastUpdated",
    ResourceType.ENCOUNTER: "period.start",
    ResourceType.OBSERVATION: "effectiveDateTime",
    ResourceType.MEDICATION_STATEMENT: "effectivePeriod.start",
    ResourceType.CONDITION: "onsetDateTime",
    ResourceType.ALLERGY_INTOLERANCE: "recordedDate",
    ResourceType.IMMUNIZATION: "occurrenceDateTime",
    ResourceType.DIAGNOSTIC_REPORT: "effectiveDateTime",
    ResourceType.DOCUMENT_REFERENCE: "date",
    ResourceType.FAMILY_MEMBER_HISTORY: "date",
    ResourceType.PROCEDURE: "performedDateTime",
}

_LABELS: dict[ResourceType, str] = {
    ResourceType.PATIENT: "patient",
    ResourceType.ENCOUNTER: "visit",
    ResourceType.OBSERVATION: "observation",
    ResourceType.MEDICATION_STATEMENT: "medication",
    ResourceType.CONDITION: "condition",
    ResourceType.ALLERGY_INTOLERANCE: "allergy",
    ResourceType.IMMUNIZATION: "immunization",
    ResourceType.DIAGNOSTIC_REPORT: "diagnostic report",
    ResourceType.DOCUMENT_REFERENCE: "document",
    ResourceType.FAMILY_MEMBER_HISTORY: "family history",
    ResourceType.PROCEDURE: "procedure",
}

HIGH_VOLUME_TYPES = frozenset(
    {ResourceType.ENCOUNTER, ResourceType.OBSERVATION, ResourceType.DIAGNOSTIC_REPORT}
)

# Checked in order; the first group with a matching keyword wins.
RESOURCE_GLOSSARY: tuple[tuple[ResourceType, tuple[str, ...]], ...] = (
    (
        ResourceType.ENCOUNTER,
        ("visit", "appointment", "encounter", "checkup", "check-up", "hospital stay", "admission"),
    ),
    (
        ResourceType.DIAGNOSTIC_REPORT,
        ("test result", "diagnostic report", "lab report", "diagnostic", "pathology", "radiology"),
    ),
    (
        ResourceType.MEDICATION_STATEMENT,
        ("medication", "medicine", "drug", "prescription", "pill", "meds"),
    ),
    (
        ResourceType.IMMUNIZATION,
        ("immunization", "immunisation", "vaccine", "vaccination", "shot", "booster"),
    ),
    (
        ResourceType.OBSERVATION,
        ("observation", "lab value", "lab result", "vital", "measurement", "blood work", "bloodwork", "level", "labs"),
    ),
    (
        ResourceType.CONDITION,
        ("condition", "diagnosis", "diagnoses", "problem", "illness", "disease"),
    ),
    (
        ResourceType.FAMILY_MEMBER_HISTORY,
        ("family history", "family member", "hereditary"),
    ),
    (
        ResourceType.ALLERGY_INTOLERANCE,
        ("allergy", "allergies", "allergic", "intolerance"),
    ),
    (
        ResourceType.DOCUMENT_REFERENCE,
        ("document", "clinical note", "discharge summary"),
    ),
    (
        ResourceType.PROCEDURE,
        ("procedure", "surgery", "surgeries", "operation"),
    ),
)


LOINC_SYSTEM = "http://loinc.org"
_LOINC_CODE_RE = re.compile(r"\b(\d{1,7}-\d)\b")


@lru_cache(maxsize=None)
def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    # Keywords must start a word so "test" does not match inside "latest".
    return re.compile(r"\b(?:" + "|".join(re.escape(keyword) for keyword in keywords) + ")")


def mentions_any(text: str, keywords: tuple[str, ...]) -> bool:
    if not keywords:
        return False
    return _keyword_pattern(keywords).search(text.lower()) is not None


@dataclass(frozen=True)
class CodeBucket:
    name: str
    codes: frozenset[str]
    keywords: tuple[str, ...] = ()

    def matches_text(self, text: str) -> bool:
        return mentions_any(text, self.keywords)

    def search_token(self) -> str:
        """Value for a FHIR ``code`` search parameter covering every code in the bucket."""
        return ",".join(f"{LOINC_SYSTEM}|{code}" for code in sorted(self.codes))


CODE_BUCKETS: tuple[CodeBucket, ...] = (
    CodeBucket(
        "cholesterol",
        frozenset({"2093-3", "2085-9", "2089-1", "2571-8"}),
        ("cholesterol", "hdl", "ldl", "triglyceride", "lipid"),
    ),
    CodeBucket(
        "glucose",
        frozenset({"2339-0", "4548-4"}),
        ("glucose", "blood sugar", "hba1c", "a1c"),
    ),
    CodeBucket(
        "blood pressure",
        frozenset({"85354-9", "8480-6", "8462-4"}),
        ("blood pressure", "systolic", "diastolic"),
    ),
    CodeBucket(
        "hemoglobin",
        frozenset({"718-7", "4548-4"}),
        ("hemoglobin", "haemoglobin"),
    ),
    CodeBucket("creatinine", frozenset({"2160-0"}), ("creatinine",)),
    CodeBucket("sodium", frozenset({"2951-2"}), ("sodium",)),
    CodeBucket("potassium", frozenset({"2823-3"}), ("potassium",)),
    CodeBucket("heart rate", frozenset({"8867-4"}), ("heart rate", "pulse")),
    CodeBucket("body weight", frozenset({"29463-7"}), ("body weight", "weight")),
)

# Words that show the user is asking about records even when no type is named.
DOMAIN_HINTS = ("record", "test", "result", "value", "health")


def translate(term: str) -> ResourceType | None:
    lowered = term.lower()
    for resource_type, keywords in RESOURCE_GLOSSARY:
        if mentions_any(lowered, keywords):
            return resource_type
    return None


def translate_code_search(term: str) -> CodeBucket | None:
    for bucket in CODE_BUCKETS:
        if bucket.matches_text(term):
            return bucket
    # A term shaped like a LOINC code searches for exactly that code.
    match = _LOINC_CODE_RE.search(term)
    if match:
        return CodeBucket(match.group(1), frozenset({match.group(1)}))
    return None


def code_bucket_by_name(name: str) -> CodeBucket | None:
    lowered = name.strip().lower()
    for bucket in CODE_BUCKETS:
        if bucket.name == lowered:
            return bucket
    return translate_code_search(lowered)


def has_domain_vocabulary(text: str) -> bool:
    lowered = text.lower()
    if translate(lowered) is not None or translate_code_search(lowered) is not None:
        return True
    return mentions_any(lowered, DOMAIN_HINTS)
