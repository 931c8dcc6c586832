"""Payload models for dose and protocol events.

Validated at read time: a payload that fails validation is reported as a
data-quality anomaly and skipped, never raised out of a projection.
"""

from typing import Any

from pydantic import BaseModel, ValidationError, field_validator


def _strip_required(v: str, field_name: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{field_name} must not be empty")
    return v


class DoseLoggedData(BaseModel):
    """Data of a dose.logged event."""

    protocol_id: str
    site: str | None = None
    amount_mg: float | None = None
    notes: str | None = None
    logged_at: Any = None

    @field_validator("protocol_id")
    @classmethod
    def protocol_id_not_empty(cls, v: str) -> str:
        return _strip_required(v, "protocol_id")

    @field_validator("amount_mg")
    @classmethod
    def amount_not_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("amount_mg must not be negative")
        return v


class ProtocolData(BaseModel):
    """Data of protocol.created / protocol.updated events."""

    protocol_id: str
    name: str
    peptide_name: str | None = None

    @field_validator("protocol_id")
    @classmethod
    def protocol_id_not_empty(cls, v: str) -> str:
        return _strip_required(v, "protocol_id")

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        return _strip_required(v, "name")


def validation_anomalies(event_id: str, data: Any, exc: ValidationError) -> list[dict[str, Any]]:
    """Flatten a ValidationError into data_quality anomaly entries."""
    anomalies = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        field = str(loc[0]) if loc else "data"
        anomalies.append({
            "event_id": event_id,
            "field": field,
            "value": data.get(field) if isinstance(data, dict) else data,
            "message": error.get("msg", "invalid value"),
        })
    return anomalies
