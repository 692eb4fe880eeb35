"""
Plain data types shared by the storefront services.

Purchase records are stored as JSON, so each type knows how to convert
itself to and from the stored dict shape (camelCase keys).
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def normalize_email(email: Optional[str]) -> str:
    return str(email or '').strip().lower()


def normalize_key(key: Optional[str]) -> str:
    return str(key or '').strip().upper()


@dataclass
class PurchaseRecord:
    """One license key handed to one buyer for one product."""

    email: str
    license_key: str
    product: str = 'Unknown'
    order_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], email: Optional[str] = None) -> 'PurchaseRecord':
        """Build a record from its stored form.

        Older records carry ``date`` (or ``timestamp``) instead of ``createdAt``.
        """
        return cls(
            email=data.get('email') or email or '',
            license_key=normalize_key(data.get('licenseKey')),
            product=data.get('product') or 'Unknown',
            order_id=data.get('orderId'),
            created_at=data.get('createdAt') or data.get('date') or data.get('timestamp') or '',
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'email': self.email,
            'licenseKey': self.license_key,
            'product': self.product,
            'orderId': self.order_id,
            'createdAt': self.created_at,
        }


@dataclass(frozen=True)
class PricingTier:
    name: str
    max_copies: int
    price: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricingTier':
        return cls(
            name=str(data.get('name') or ''),
            max_copies=int(data.get('maxCopies') or 0),
            price=float(data.get('price') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'maxCopies': self.max_copies, 'price': self.price}


@dataclass(frozen=True)
class PoolDocument:
    """A parsed key-pool document.

    ``format`` records which shape the source used: ``list`` for a bare JSON
    array, ``wrapped`` for an object with a ``keys`` array.
    """

    format: str
    keys: List[str]


@dataclass(frozen=True)
class CaptureEvent:
    """A successful payment capture, as reported by the payment provider."""

    buyer_email: str
    product: str
    order_id: str


class AllocationState(str, Enum):
    CAPTURED = 'CAPTURED'
    KEY_ALLOCATED = 'KEY_ALLOCATED'
    RECORDED = 'RECORDED'
    NOTIFIED = 'NOTIFIED'
    FAILED_NO_KEY = 'FAILED_NO_KEY'
    FAILED_PERSIST = 'FAILED_PERSIST'


@dataclass
class AllocationOutcome:
    state: AllocationState
    license_key: Optional[str] = None
    order_id: Optional[str] = None
    email: Optional[str] = None
    product: Optional[str] = None
    price: Optional[str] = None
    tier: Optional[str] = None
    recorded: bool = False
    email_sent: bool = False
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'licenseKey': self.license_key,
            'orderId': self.order_id,
            'email': self.email,
            'product': self.product,
            'price': self.price,
            'tier': self.tier,
            'recorded': self.recorded,
            'emailSent': self.email_sent,
            'duplicate': self.duplicate,
        }


@dataclass
class RotationResult:
    rotated: int = 0
    emails_sent: int = 0
    failed_emails: List[str] = field(default_factory=list)
    assignments: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    email: Optional[str] = None
    product: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'valid': self.valid,
            'email': self.email,
            'product': self.product,
            'timestamp': self.created_at,
        }
        if self.reason:
            data['error'] = self.reason
        return data
