"""Operation types and the request context evaluated by chains and guards."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from tradeguard.core.errors import ValidationError
from tradeguard.core.roles import Role


class OperationType(str, Enum):
    """Business operations that can be gated behind approval."""

    CAPITAL_ENTRY = "capital_entry"
    PURCHASE = "purchase"
    SALE_ORDER = "sale_order"
    FINANCIAL_ADJUSTMENT = "financial_adjustment"
    USER_ROLE_CHANGE = "user_role_change"
    SYSTEM_SETTING_CHANGE = "system_setting_change"
    WAREHOUSE_OPERATION = "warehouse_operation"
    SHIPPING_OPERATION = "shipping_operation"
    OPERATING_EXPENSE = "operating_expense"
    SUPPLY_PURCHASE = "supply_purchase"
    DOCUMENT_DELETION = "document_deletion"

    @classmethod
    def parse(cls, value: Union[str, "OperationType"]) -> "OperationType":
        if isinstance(value, OperationType):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValidationError(
                f"Unknown operation type: {value!r}",
                details={"allowed": [o.value for o in cls]},
            ) from None


# Fields of the operation payload that an approval is bound to. Changing any of
# them after approval invalidates the approval for execution.
CORE_FIELDS: Dict[OperationType, Tuple[str, ...]] = {
    OperationType.CAPITAL_ENTRY: ("amount", "type", "paymentCurrency"),
    OperationType.PURCHASE: ("total", "currency", "supplierId", "weight"),
    OperationType.SALE_ORDER: ("totalAmount", "currency", "customerId"),
    OperationType.FINANCIAL_ADJUSTMENT: ("amount", "currency", "reason"),
    OperationType.USER_ROLE_CHANGE: ("role",),
    OperationType.SYSTEM_SETTING_CHANGE: ("key", "value"),
    OperationType.WAREHOUSE_OPERATION: ("qtyKgTotal", "warehouse"),
    OperationType.SHIPPING_OPERATION: ("totalWeight", "destinationAddress"),
    OperationType.OPERATING_EXPENSE: ("amount", "currency", "category"),
    OperationType.SUPPLY_PURCHASE: ("total", "currency", "supplierId"),
    OperationType.DOCUMENT_DELETION: ("documentId",),
}


def to_amount(value: Any) -> Optional[Decimal]:
    """Parse a monetary amount, raising ValidationError on garbage."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


@dataclass
class ApprovalContext:
    """
    Business context of a protected operation.

    This is what chain triggers, conditions and guards see. ``request_data``
    is an opaque snapshot of the operation payload kept for audit replay and
    for binding the approval to the operation at execution time.
    """
    requester_id: str
    requester_role: Role
    amount: Optional[Decimal] = None
    currency: Optional[str] = "USD"
    description: str = ""
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    request_data: Dict[str, Any] = field(default_factory=dict)
    business_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.requester_id:
            raise ValidationError("requester_id is required")
        self.requester_role = Role.parse(self.requester_role)
        self.amount = to_amount(self.amount)
        if self.currency:
            self.currency = self.currency.upper()

    def field_value(self, name: str, operation_type: Optional[OperationType] = None) -> Any:
        """Value of a named context field as seen by the condition language."""
        if name == "amount":
            return self.amount
        if name == "currency":
            return self.currency
        if name == "requester_role":
            return self.requester_role.value
        if name == "requester_id":
            return self.requester_id
        if name == "entity_type":
            return self.entity_type
        if name == "operation_type":
            return operation_type.value if operation_type else None
        raise ValidationError(f"Unknown context field: {name!r}")
