"""
Readmission Risk Service - Patient Store

Tenant-scoped persistence for patient records using SQLAlchemy Core.

================================================================================
TENANT ISOLATION
================================================================================

Every patient record belongs to exactly one hospital. Every public method of
PatientStore takes the caller's hospital_id as a required argument, and every
statement's WHERE clause is built by PatientStore._scoped(), which always
includes the hospital filter. A record owned by another hospital behaves
exactly like a record that does not exist.

================================================================================
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from readmission_risk.config import settings
from readmission_risk.model import RiskAssessment, RiskLevel
from readmission_risk.schemas import ReadmissionRiskRecord, RiskLabel

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class PatientStoreError(Exception):
    """Base class for patient store errors."""


class InvalidPatientIdError(PatientStoreError):
    """The identifier is not a well-formed record id."""


class DuplicatePatientError(PatientStoreError):
    """The hospital already has a record with this patientId."""


# =============================================================================
# SCHEMA
# =============================================================================

PATIENT_ID_CONSTRAINT = "uq_patients_hospital_patient_id"

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("hospital_id", String(64), nullable=False, index=True),
    Column("patient_id", String(128), nullable=False),
    Column("first_name", String(255), nullable=False),
    Column("last_name", String(255), nullable=False),
    Column("age", Integer, nullable=False),
    Column("gender", String(16), nullable=False),
    Column("medical_history", Text),
    Column("current_medications", Text),
    Column("diagnosis", Text, nullable=False),
    Column("length_of_stay", Integer, nullable=False),
    Column("previous_admissions", Integer, nullable=False, default=0),
    Column("readmission_risk", JSON, nullable=False),
    Column("file_urls", JSON, nullable=False),
    Column("date", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("hospital_id", "patient_id", name=PATIENT_ID_CONSTRAINT),
)

# Scorer tier -> persisted label
TIER_LABELS = {
    RiskLevel.LOW: RiskLabel.LOW,
    RiskLevel.MODERATE: RiskLabel.MEDIUM,
    RiskLevel.HIGH: RiskLabel.HIGH,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _risk_record(value: Any) -> Dict[str, Any]:
    """Normalize any accepted risk shape to the stored JSON object."""
    if value is None:
        return ReadmissionRiskRecord().model_dump(mode="json", by_alias=True)
    return ReadmissionRiskRecord.model_validate(value).model_dump(mode="json", by_alias=True)


def _is_duplicate_patient_id(error: IntegrityError) -> bool:
    # PostgreSQL names the constraint; SQLite lists its columns
    message = str(error.orig)
    return PATIENT_ID_CONSTRAINT in message or (
        "UNIQUE constraint failed" in message and "patients.patient_id" in message
    )


def _normalize(values: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in values.items():
        if key == "readmission_risk":
            value = _risk_record(value)
        elif isinstance(value, Enum):
            value = value.value
        normalized[key] = value
    return normalized


# =============================================================================
# STORE
# =============================================================================

class PatientStore:
    """
    Patient record persistence, always filtered by hospital.

    Example:
        >>> store = PatientStore("sqlite:///:memory:")
        >>> store.create_tables()
        >>> record = store.create_patient("hospital-a", {...})
        >>> store.get_patient("hospital-b", record["id"]) is None
        True
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy connection string (default from settings)
        """
        self.database_url = str(database_url or settings.database_url)
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        """Lazily create database engine."""
        if self._engine is None:
            if self.database_url.startswith("sqlite"):
                # One shared connection so in-memory databases survive across threads
                self._engine = create_engine(
                    self.database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=settings.db_pool_size,
                    pool_timeout=settings.db_pool_timeout,
                    pool_pre_ping=True,  # Verify connections before use
                )
        return self._engine

    def create_tables(self) -> None:
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # -------------------------------
    # Scoping
    # -------------------------------
    @staticmethod
    def parse_id(record_id: Any) -> str:
        """Canonical form of a record id; raises InvalidPatientIdError if malformed."""
        try:
            return str(uuid.UUID(str(record_id)))
        except (TypeError, ValueError, AttributeError):
            raise InvalidPatientIdError(f"Invalid patient ID: {record_id!r}")

    @staticmethod
    def _scoped(hospital_id: str, record_id: Optional[str] = None):
        hospital_id = PatientStore._require_hospital(hospital_id)
        conditions = [patients.c.hospital_id == str(hospital_id)]
        if record_id is not None:
            conditions.append(patients.c.id == record_id)
        return and_(*conditions)

    @staticmethod
    def _to_dict(row) -> Dict[str, Any]:
        return dict(row._mapping)

    # -------------------------------
    # CRUD
    # -------------------------------
    def list_patients(self, hospital_id: str) -> List[Dict[str, Any]]:
        query = (
            select(patients)
            .where(self._scoped(hospital_id))
            .order_by(patients.c.created_at)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        logger.info(
            f"Loaded {len(rows)} patient records",
            extra={"hospital_id": hospital_id}
        )
        return [self._to_dict(row) for row in rows]

    def create_patient(self, hospital_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new patient record owned by hospital_id.

        Args:
            hospital_id: Owning hospital (overrides anything in data)
            data: snake_case field values validated by PatientCreate

        Returns:
            The stored record

        Raises:
            DuplicatePatientError: patient_id already used by this hospital
            IntegrityError: any other constraint violation
        """
        now = _utcnow()
        record = {
            "medical_history": None,
            "current_medications": None,
            "previous_admissions": 0,
            "readmission_risk": None,
            "file_urls": [],
            "date": now,
        }
        record.update({k: v for k, v in data.items() if v is not None})
        record.update({
            "id": str(uuid.uuid4()),
            "hospital_id": str(self._require_hospital(hospital_id)),
            "created_at": now,
            "updated_at": now,
        })
        record = _normalize(record)

        try:
            with self.engine.begin() as conn:
                conn.execute(insert(patients).values(**record))
        except IntegrityError as e:
            if not _is_duplicate_patient_id(e):
                raise
            logger.warning(
                f"Duplicate patient ID {record.get('patient_id')}",
                extra={"hospital_id": hospital_id}
            )
            raise DuplicatePatientError(
                f"Patient ID {record.get('patient_id')} already exists"
            ) from e

        logger.info(
            f"Created patient record {record['id']}",
            extra={"hospital_id": hospital_id}
        )
        return self.get_patient(hospital_id, record["id"])

    def get_patient(self, hospital_id: str, record_id: Any) -> Optional[Dict[str, Any]]:
        record_id = self.parse_id(record_id)
        query = select(patients).where(self._scoped(hospital_id, record_id))
        with self.engine.connect() as conn:
            row = conn.execute(query).first()
        return self._to_dict(row) if row is not None else None

    def update_patient(
        self,
        hospital_id: str,
        record_id: Any,
        changes: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Apply a partial update; returns the updated record or None if no match.
        """
        record_id = self.parse_id(record_id)
        values = _normalize(changes)
        values.pop("id", None)
        values.pop("hospital_id", None)
        values["updated_at"] = _utcnow()

        with self.engine.begin() as conn:
            result = conn.execute(
                update(patients)
                .where(self._scoped(hospital_id, record_id))
                .values(**values)
            )
        if result.rowcount == 0:
            return None

        logger.info(
            f"Updated patient record {record_id} ({len(changes)} fields)",
            extra={"hospital_id": hospital_id}
        )
        return self.get_patient(hospital_id, record_id)

    def delete_patient(self, hospital_id: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Delete a record; returns the deleted record or None if no match."""
        record_id = self.parse_id(record_id)
        scope = self._scoped(hospital_id, record_id)
        with self.engine.begin() as conn:
            row = conn.execute(select(patients).where(scope)).first()
            if row is None:
                return None
            conn.execute(delete(patients).where(scope))

        logger.info(
            f"Deleted patient record {record_id}",
            extra={"hospital_id": hospital_id}
        )
        return self._to_dict(row)

    def record_risk_assessment(
        self,
        hospital_id: str,
        record_id: Any,
        assessment: RiskAssessment,
    ) -> Optional[Dict[str, Any]]:
        """
        Write a scorer result onto a patient's structured readmissionRisk.

        Unknown or malformed ids are not an error: the result is simply not
        persisted and None is returned.
        """
        try:
            record_id = self.parse_id(record_id)
        except InvalidPatientIdError:
            logger.info(
                f"Skipping risk write-back for malformed id {record_id!r}",
                extra={"hospital_id": hospital_id}
            )
            return None

        risk = {
            "label": TIER_LABELS[assessment.risk_level],
            "score": assessment.readmission_risk,
            "factors": list(assessment.factors),
            "lastUpdated": _utcnow(),
        }
        updated = self.update_patient(hospital_id, record_id, {"readmission_risk": risk})
        if updated is None:
            logger.info(
                f"No patient {record_id} for risk write-back",
                extra={"hospital_id": hospital_id}
            )
        return updated

    def close(self) -> None:
        """Close database connections."""
        if self._engine:
            self._engine.dispose()
            self._engine = None

    @staticmethod
    def _require_hospital(hospital_id: str) -> str:
        if not hospital_id:
            raise ValueError("hospital_id is required for every patient query")
        return hospital_id
