import datetime as dt
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, CategoryType, IntervalUnit


class UpdateIn(BaseModel):
    """Partial update. Only fields the client actually sent are applied."""

    model_config = ConfigDict(extra="forbid")

    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    expected_version: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _reject_nulls(self) -> "UpdateIn":
        for name in self.model_fields_set:
            if name == "expected_version" or name in self.nullable_fields:
                continue
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    @classmethod
    def editable_fields(cls) -> frozenset[str]:
        return frozenset(cls.model_fields) - {"expected_version"}

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"expected_version"})


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.cash
    init_balance_cents: int = 0
    is_default: bool = False


class AccountUpdate(UpdateIn):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    account_type: Optional[AccountType] = None
    init_balance_cents: Optional[int] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    category_type: CategoryType = CategoryType.expense
    is_default: bool = False


class CategoryUpdate(UpdateIn):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category_type: Optional[CategoryType] = None


class PayeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    is_default: bool = False


class PayeeUpdate(UpdateIn):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class TransactionIn(BaseModel):
    value_cents: int = Field(..., ge=0)
    date: Optional[dt.date] = None
    account_id: str
    category_id: Optional[str] = None
    payee_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=1000)


class TransactionUpdate(UpdateIn):
    nullable_fields: ClassVar[frozenset[str]] = frozenset(
        {"category_id", "payee_id", "note"}
    )

    value_cents: Optional[int] = Field(default=None, ge=0)
    date: Optional[dt.date] = None
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    payee_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=1000)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    payee_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_scope(self) -> "BudgetIn":
        scopes = [s for s in (self.account_id, self.category_id, self.payee_id) if s]
        if len(scopes) != 1:
            raise ValueError(
                "Budget must be scoped to exactly one of account, category or payee"
            )
        return self


class BudgetUpdate(UpdateIn):
    amount_cents: Optional[int] = Field(default=None, ge=0)


class RecurringTransactionIn(BaseModel):
    value_cents: int = Field(..., ge=0)
    account_id: str
    category_id: Optional[str] = None
    payee_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    interval_unit: IntervalUnit
    interval_count: int = Field(default=1, gt=0)
    anchor_date: dt.date
    end_date: Optional[dt.date] = None


class ResolveConflictIn(BaseModel):
    chosen_version: int
    merge_data: Optional[dict[str, Any]] = None
