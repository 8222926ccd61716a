"""
Data model for the reconciliation engine.

Desired and observed records are snapshots for a single run; the delta and the
actions inside it form an immutable plan that the reconciliation driver consumes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ActionType(str, Enum):
    """Kind of action the plan assigns to an account."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NO_CHANGE = "NO_CHANGE"


@dataclass(frozen=True)
class DesiredRecord:
    """
    One row of declared state.

    Attributes:
        email: Identity key (compared case-insensitively)
        display_name: Display name for the account
        attributes: Standard attributes, already parsed to their schema type
        manager_email: Manager reference, None when absent or empty
        manager_specified: False when the source carried no manager column at all
        custom_attributes: Attributes outside the standard schema
    """

    email: str
    display_name: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)
    manager_email: Optional[str] = None
    manager_specified: bool = False
    custom_attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.email.strip().lower()


@dataclass(frozen=True)
class ObservedRecord:
    """
    One remote account as read at planning time.

    ``roles`` is None when the directory roles could not be determined and
    an empty tuple when the account holds no roles. ``custom_attributes`` is
    None when the account has no custom-attribute extension yet.
    """

    user_id: str
    email: str
    display_name: str = ""
    attributes: Dict[str, Any] = field(default_factory=dict)
    manager_id: Optional[str] = None
    manager_email: Optional[str] = None
    custom_attributes: Optional[Dict[str, str]] = None
    roles: Optional[Tuple[str, ...]] = ()

    @property
    def key(self) -> str:
        return self.email.strip().lower()


@dataclass(frozen=True)
class Change:
    """A single attribute-level difference."""

    field: str
    old_value: Any
    new_value: Any
    is_custom_property: bool = False


@dataclass(frozen=True)
class Action:
    """Tags a desired/observed pair with the action the plan assigns to it."""

    action: ActionType
    desired: Optional[DesiredRecord] = None
    observed: Optional[ObservedRecord] = None
    changes: Tuple[Change, ...] = ()

    @property
    def key(self) -> str:
        record = self.desired if self.desired is not None else self.observed
        return record.key

    @property
    def email(self) -> str:
        record = self.desired if self.desired is not None else self.observed
        return record.email

    @property
    def display_name(self) -> str:
        if self.desired is not None and self.desired.display_name:
            return self.desired.display_name
        if self.observed is not None:
            return self.observed.display_name
        return ""

    @property
    def user_id(self) -> Optional[str]:
        return self.observed.user_id if self.observed is not None else None


@dataclass(frozen=True)
class ProtectionCandidate:
    """An account considered for mutation by the protection filter."""

    email: str
    user_id: Optional[str] = None
    display_name: str = ""
    roles: Optional[Tuple[str, ...]] = ()


@dataclass(frozen=True)
class ProtectedAccount:
    """An account excluded from mutation and the reason why."""

    email: str
    reason: str
    role: Optional[str] = None


@dataclass(frozen=True)
class DeltaSummary:
    total_desired: int
    total_observed: int
    to_create: int
    to_update: int
    to_delete: int
    unchanged: int
    custom_properties_detected: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Delta:
    """
    The create/update/delete/no-change partition for one run.

    ``protected`` lists accounts that protection rules removed from the plan;
    they are informational only and never appear in any action set.
    """

    create: Tuple[Action, ...]
    update: Tuple[Action, ...]
    delete: Tuple[Action, ...]
    no_change: Tuple[Action, ...]
    summary: DeltaSummary
    protected: Tuple[ProtectedAccount, ...] = ()

    def keys(self, action_type: ActionType) -> List[str]:
        """Return the identity keys of all actions of the given type."""
        bucket = {
            ActionType.CREATE: self.create,
            ActionType.UPDATE: self.update,
            ActionType.DELETE: self.delete,
            ActionType.NO_CHANGE: self.no_change,
        }[action_type]
        return [action.key for action in bucket]


@dataclass(frozen=True)
class CreateRequest:
    """Payload for creating one account."""

    email: str
    display_name: str
    password: str
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CreatedAccount:
    """An account the directory confirmed as created."""

    email: str
    user_id: str
    display_name: str
    password: Optional[str] = None


@dataclass(frozen=True)
class UserUpdate:
    """
    One remote update operation.

    Standard attributes and custom attributes are separate operations since
    they target different remote resources.
    """

    user_id: str
    email: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    custom_attributes: Dict[str, str] = field(default_factory=dict)
    create_extension: bool = False

    @property
    def is_custom(self) -> bool:
        return bool(self.custom_attributes)


@dataclass(frozen=True)
class DeleteRequest:
    user_id: str
    email: str


@dataclass(frozen=True)
class LicenseAssignment:
    """Add one subscription SKU to an account."""

    user_id: str
    email: str
    sku_id: str


@dataclass(frozen=True)
class ManagerInstruction:
    """
    Assign or clear a manager edge.

    ``manager_id`` None means the relationship must be removed.
    """

    user_id: str
    email: str
    manager_id: Optional[str] = None
    manager_email: Optional[str] = None

    @property
    def is_removal(self) -> bool:
        return self.manager_id is None


@dataclass
class FailedItem:
    item: Any
    error: str


@dataclass
class BatchResult:
    """Per-item outcome of a batched remote operation."""

    successful: List[Any] = field(default_factory=list)
    failed: List[FailedItem] = field(default_factory=list)
    batches_dispatched: int = 0
