"""
Data Models for Persistence Layer

Records for impounded vehicles, ledger payments and issued receipts, with
their database tuple / row conversions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..core.status import VehicleStatus


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Any) -> Optional[str]:
    """PostgreSQL hands back datetimes, SQLite hands back strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


class PaymentOrigin(Enum):
    """Where a payment was originated."""
    INTERNAL = "internal"  # staff entry
    EXTERNAL = "external"  # gateway callback


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(Enum):
    CASH = "cash"
    MOBILE_MONEY = "mobile_money"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"

    @property
    def label(self) -> str:
        return {
            PaymentMethod.CASH: "Espèces",
            PaymentMethod.MOBILE_MONEY: "Paiement Mobile",
            PaymentMethod.CARD: "Carte bancaire",
            PaymentMethod.BANK_TRANSFER: "Virement bancaire",
        }[self]


@dataclass
class VehicleRecord:
    """Persisted impound record."""
    vehicle_id: str
    license_plate: str
    category: str
    impounded_at: str
    status: VehicleStatus = VehicleStatus.IMPOUNDED
    make: Optional[str] = None
    model: Optional[str] = None
    color: Optional[str] = None
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    owner_email: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "license_plate": self.license_plate,
            "category": self.category,
            "impounded_at": self.impounded_at,
            "status": self.status.value,
            "make": self.make,
            "model": self.model,
            "color": self.color,
            "owner_name": self.owner_name,
            "owner_phone": self.owner_phone,
            "owner_email": self.owner_email,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.vehicle_id,
            self.license_plate,
            self.category,
            self.impounded_at,
            self.status.value,
            self.make,
            self.model,
            self.color,
            self.owner_name,
            self.owner_phone,
            self.owner_email,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VehicleRecord":
        return cls(
            vehicle_id=row["vehicle_id"],
            license_plate=row["license_plate"],
            category=row["category"],
            impounded_at=_iso(row["impounded_at"]),
            status=VehicleStatus(row.get("status", "impounded")),
            make=row.get("make"),
            model=row.get("model"),
            color=row.get("color"),
            owner_name=row.get("owner_name"),
            owner_phone=row.get("owner_phone"),
            owner_email=row.get("owner_email"),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class PaymentRecord:
    """Persisted ledger entry. Never updated once completed."""
    payment_id: str
    vehicle_id: str
    amount: int
    method: PaymentMethod
    origin: PaymentOrigin
    status: PaymentStatus
    external_reference: Optional[str] = None
    recorded_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def reference(self) -> str:
        """Public reference: the gateway transaction id, else the payment id."""
        return self.external_reference or self.payment_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "vehicle_id": self.vehicle_id,
            "amount": self.amount,
            "method": self.method.value,
            "origin": self.origin.value,
            "status": self.status.value,
            "external_reference": self.external_reference,
            "recorded_by": self.recorded_by,
            "notes": self.notes,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.payment_id,
            self.vehicle_id,
            self.amount,
            self.method.value,
            self.origin.value,
            self.external_reference,
            self.status.value,
            self.recorded_by,
            self.notes,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            payment_id=row["payment_id"],
            vehicle_id=row["vehicle_id"],
            amount=int(row["amount"]),
            method=PaymentMethod(row["method"]),
            origin=PaymentOrigin(row["origin"]),
            status=PaymentStatus(row["status"]),
            external_reference=row.get("external_reference"),
            recorded_by=row.get("recorded_by"),
            notes=row.get("notes"),
            created_at=_iso(row["created_at"]),
        )


@dataclass
class ReceiptRecord:
    """Persisted receipt: the link between a payment and its artifact."""
    payment_id: str
    receipt_number: str
    artifact_path: str
    verification_code: str
    payload: str
    content_hash: str
    signature: str
    key_id: str
    issued_at: str = field(default_factory=utcnow_iso)
    regenerated_at: Optional[str] = None
    issue_count: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "receipt_number": self.receipt_number,
            "artifact_path": self.artifact_path,
            "verification_code": self.verification_code,
            "content_hash": self.content_hash,
            "signature": self.signature,
            "key_id": self.key_id,
            "issued_at": self.issued_at,
            "regenerated_at": self.regenerated_at,
            "issue_count": self.issue_count,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.payment_id,
            self.receipt_number,
            self.artifact_path,
            self.verification_code,
            self.payload,
            self.content_hash,
            self.signature,
            self.key_id,
            self.issued_at,
            self.regenerated_at,
            self.issue_count,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReceiptRecord":
        return cls(
            payment_id=row["payment_id"],
            receipt_number=row["receipt_number"],
            artifact_path=row["artifact_path"],
            verification_code=row["verification_code"],
            payload=row["payload"],
            content_hash=row["content_hash"],
            signature=row["signature"],
            key_id=row["key_id"],
            issued_at=_iso(row["issued_at"]),
            regenerated_at=_iso(row.get("regenerated_at")),
            issue_count=int(row.get("issue_count", 1)),
        )
