"""
Readmission Risk Service - Request/Response Schemas

Pydantic models for the HTTP API. Field names are snake_case in Python and
camelCase on the wire (via aliases), matching the JSON the hospital front
end already sends.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class RiskLabel(str, Enum):
    """
    Persisted risk label on a patient record.

    The scorer's "Moderate" tier is stored as "Medium".
    """
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    UNKNOWN = "Unknown"


# =============================================================================
# RISK ASSESSMENT
# =============================================================================

class MedicalHistory(BaseModel):
    """Structured history used by the scorer."""

    conditions: Optional[List[str]] = Field(
        default=None,
        description="Free-text condition names (matched case-insensitively)"
    )
    medications: Optional[List[str]] = Field(
        default=None,
        description="Current medication names (only the count is scored)"
    )


class CurrentVisit(BaseModel):
    admission_date: Optional[datetime] = Field(
        default=None,
        alias="admissionDate",
        description="Start of the current stay (UTC when no offset is given)"
    )

    class Config:
        populate_by_name = True


class PatientAssessmentInput(BaseModel):
    """
    Patient attributes consumed by the readmission risk scorer.

    Every field is optional; absent fields simply do not score.
    """

    age: Optional[int] = Field(
        default=None,
        ge=0,
        description="Patient age in years"
    )
    previous_hospitalizations: Optional[List[Any]] = Field(
        default=None,
        alias="previousHospitalizations",
        description="Prior visit records (only the count is scored)"
    )
    medical_history: Optional[MedicalHistory] = Field(
        default=None,
        alias="medicalHistory",
    )
    current_visit: Optional[CurrentVisit] = Field(
        default=None,
        alias="currentVisit",
    )

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "patientId": "8c4f9e0a-3b1d-4a52-9d7e-2f6b1c0e7a11",
                "age": 72,
                "previousHospitalizations": [{"date": "2024-03-02"}],
                "medicalHistory": {
                    "conditions": ["Type 2 Diabetes", "COPD"],
                    "medications": ["metformin", "albuterol"],
                },
                "currentVisit": {"admissionDate": "2024-05-01T08:00:00Z"},
            }
        }

    def to_scorer_input(self) -> Dict[str, Any]:
        """camelCase dictionary in the shape RiskScorer expects."""
        return self.model_dump(by_alias=True, exclude_none=True)


class PredictionRequest(PatientAssessmentInput):
    patient_id: Optional[str] = Field(
        default=None,
        alias="patientId",
        description="System identifier of a stored patient to update"
    )

    def to_scorer_input(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"patient_id"})


class RiskAssessmentResponse(BaseModel):
    readmission_risk: int = Field(ge=0, le=100, alias="readmissionRisk")
    risk_level: Literal["Low", "Moderate", "High"] = Field(alias="riskLevel")
    factors: List[str]
    notes: str

    class Config:
        populate_by_name = True


# =============================================================================
# PATIENT RECORDS
# =============================================================================

class ReadmissionRiskRecord(BaseModel):
    """Structured readmission risk stored on a patient record."""

    label: RiskLabel = RiskLabel.UNKNOWN
    score: Optional[int] = Field(default=None, ge=0, le=100)
    factors: List[str] = Field(default_factory=list)
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")

    class Config:
        populate_by_name = True


def _coerce_risk_record(value: Any) -> Any:
    # A bare label ("High") is shorthand for {"label": "High"}
    if isinstance(value, str):
        return {"label": value}
    return value


class PatientCreate(BaseModel):
    """Request schema for creating a patient record."""

    patient_id: str = Field(..., alias="patientId", min_length=1)
    first_name: str = Field(..., alias="firstName", min_length=1)
    last_name: str = Field(..., alias="lastName", min_length=1)
    age: int = Field(..., ge=0)
    gender: Gender
    medical_history: Optional[str] = Field(default=None, alias="medicalHistory")
    current_medications: Optional[str] = Field(default=None, alias="currentMedications")
    diagnosis: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("primaryDiagnosis", "diagnosis"),
        description="Primary diagnosis"
    )
    length_of_stay: int = Field(..., alias="lengthOfStay", ge=0)
    previous_admissions: int = Field(default=0, alias="previousAdmissions", ge=0)
    readmission_risk: Optional[ReadmissionRiskRecord] = Field(
        default=None,
        alias="readmissionRisk",
    )
    file_urls: List[str] = Field(default_factory=list, alias="fileUrls")
    date: Optional[datetime] = None

    class Config:
        populate_by_name = True
        str_strip_whitespace = True
        json_schema_extra = {
            "example": {
                "patientId": "MRN-004211",
                "firstName": "Ada",
                "lastName": "Lovelace",
                "age": 67,
                "gender": "female",
                "primaryDiagnosis": "Congestive heart failure",
                "lengthOfStay": 6,
                "previousAdmissions": 2,
            }
        }

    coerce_risk = field_validator("readmission_risk", mode="before")(_coerce_risk_record)


class PatientUpdate(BaseModel):
    """Partial update; only provided fields change."""

    first_name: Optional[str] = Field(default=None, alias="firstName", min_length=1)
    last_name: Optional[str] = Field(default=None, alias="lastName", min_length=1)
    age: Optional[int] = Field(default=None, ge=0)
    gender: Optional[Gender] = None
    medical_history: Optional[str] = Field(default=None, alias="medicalHistory")
    current_medications: Optional[str] = Field(default=None, alias="currentMedications")
    diagnosis: Optional[str] = Field(
        default=None,
        min_length=1,
        validation_alias=AliasChoices("primaryDiagnosis", "diagnosis"),
    )
    length_of_stay: Optional[int] = Field(default=None, alias="lengthOfStay", ge=0)
    previous_admissions: Optional[int] = Field(default=None, alias="previousAdmissions", ge=0)
    readmission_risk: Optional[ReadmissionRiskRecord] = Field(
        default=None,
        alias="readmissionRisk",
    )
    file_urls: Optional[List[str]] = Field(default=None, alias="fileUrls")

    class Config:
        populate_by_name = True
        str_strip_whitespace = True

    coerce_risk = field_validator("readmission_risk", mode="before")(_coerce_risk_record)


class PatientResponse(BaseModel):
    id: str
    patient_id: str = Field(alias="patientId")
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    age: int
    gender: Gender
    medical_history: Optional[str] = Field(default=None, alias="medicalHistory")
    current_medications: Optional[str] = Field(default=None, alias="currentMedications")
    diagnosis: str
    length_of_stay: int = Field(alias="lengthOfStay")
    previous_admissions: int = Field(default=0, alias="previousAdmissions")
    readmission_risk: ReadmissionRiskRecord = Field(
        default_factory=ReadmissionRiskRecord,
        alias="readmissionRisk",
    )
    file_urls: List[str] = Field(default_factory=list, alias="fileUrls")
    date: datetime
    hospital_id: str = Field(alias="hospitalId")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    class Config:
        populate_by_name = True


class DeleteResponse(BaseModel):
    success: bool = True
    data: str


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

class Recommendation(BaseModel):
    text: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)


# The recommendation route answers 200 for any JSON body, so its inputs are
# cleaned rather than rejected: unusable values become None.

def _scalar_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def _whole_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value >= 0:
        return value
    return None


def _text_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return None
    items = [text for text in (_scalar_text(v) for v in value) if text]
    return items or None


class PatientContext(BaseModel):
    """Optional patient details used to personalise recommendations."""

    age: Optional[int] = None
    gender: Optional[str] = None
    diagnosis: Optional[str] = None
    comorbidities: Optional[List[str]] = None
    medications: Optional[List[str]] = None

    clean_age = field_validator("age", mode="before")(_whole_number)
    clean_text = field_validator("gender", "diagnosis", mode="before")(_scalar_text)
    clean_lists = field_validator("comorbidities", "medications", mode="before")(_text_list)


class RecommendationRequest(BaseModel):
    risk_category: Optional[str] = Field(
        default=None,
        alias="riskCategory",
        description="Risk tier (high, medium, low); anything but text means fallback"
    )
    risk_value: Optional[Any] = Field(
        default=None,
        alias="riskValue",
        description="Numeric or textual risk value shown in the prompt"
    )
    patient_data: Optional[PatientContext] = Field(
        default=None,
        alias="patientData",
    )

    class Config:
        populate_by_name = True

    @model_validator(mode="before")
    @classmethod
    def require_object(cls, data: Any) -> Any:
        return data if isinstance(data, dict) else {}

    @field_validator("risk_category", mode="before")
    @classmethod
    def clean_category(cls, value: Any) -> Optional[str]:
        if isinstance(value, str):
            return value.strip() or None
        return None

    @field_validator("patient_data", mode="before")
    @classmethod
    def clean_patient_data(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, PatientContext)) else None


class RecommendationMetadata(BaseModel):
    risk_category: Optional[str] = Field(default=None, alias="riskCategory")
    risk_value: Optional[Any] = Field(default=None, alias="riskValue")
    generated_at: datetime = Field(alias="generatedAt")
    source: Literal["ai-generated", "fallback"]

    class Config:
        populate_by_name = True


class RecommendationResponse(BaseModel):
    recommendations: List[Recommendation]
    metadata: RecommendationMetadata


# =============================================================================
# OPERATIONS
# =============================================================================

class HealthResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]
