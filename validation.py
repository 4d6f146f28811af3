from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from models import Expense
    from services import CategoryService, FundService


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, object]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class SourceFundValidator:
    """Decides whether an expense's fund configuration is admissible.

    Rules run in order and the first violated rule rejects:

    1. the amount is strictly positive;
    2. the source fund is present and exists, and belongs to the category's
       fund set when that set is non-empty;
    3. a destination fund, when present, exists and differs from the source.

    Warnings never reject. On a partial update ``supplied`` names the fields
    the caller sent; a rule only runs when one of its fields was supplied, so
    untouched values on the existing record are never re-judged. Pass
    ``supplied=None`` for a create to run every rule.
    """

    def __init__(self, funds: "FundService", categories: "CategoryService") -> None:
        self.funds = funds
        self.categories = categories

    def validate(
        self,
        category_id: int,
        source_fund_id: Optional[int],
        destination_fund_id: Optional[int],
        amount_cents: Optional[int],
        *,
        previous: Optional["Expense"] = None,
        supplied: Optional[set[str]] = None,
    ) -> ValidationResult:
        result = ValidationResult()

        def wants(*fields: str) -> bool:
            return supplied is None or any(f in supplied for f in fields)

        if wants("amount_cents") and (amount_cents is None or amount_cents <= 0):
            result.errors.append("Amount must be greater than zero")
            return result

        source = (
            self.funds.find(source_fund_id) if source_fund_id is not None else None
        )
        if wants("category_id", "source_fund_id"):
            if source_fund_id is None:
                result.errors.append("A source fund is required for this expense")
                return result
            if source is None:
                result.errors.append(f"Source fund {source_fund_id} does not exist")
                return result
            allowed = self.categories.funds_for(category_id)
            if allowed and source_fund_id not in allowed:
                category = self.categories.get(category_id)
                allowed_names = ", ".join(sorted(self.funds.names(allowed).values()))
                result.errors.append(
                    f'Source fund "{source.name}" is not associated with category '
                    f'"{category.name}". Allowed funds: {allowed_names}'
                )
                return result

        if destination_fund_id is not None and wants(
            "destination_fund_id", "source_fund_id", "category_id"
        ):
            destination = self.funds.find(destination_fund_id)
            if destination is None:
                result.errors.append(
                    f"Destination fund {destination_fund_id} does not exist"
                )
                return result
            if destination_fund_id == source_fund_id:
                result.errors.append(
                    "Destination fund must be different from the source fund"
                )
                return result
            source_name = source.name if source is not None else "unknown"
            result.warnings.append(
                f'This expense is a transfer from "{source_name}" '
                f'to "{destination.name}"'
            )

        if previous is not None:
            self._update_warnings(
                result, previous, category_id, source_fund_id, destination_fund_id
            )

        if source is not None and amount_cents and amount_cents > 0:
            available = source.current_balance_cents
            if previous is not None and previous.source_fund_id == source.id:
                available += previous.amount_cents
            if amount_cents > available:
                result.warnings.append(
                    f'Amount {amount_cents} exceeds the available balance of '
                    f'"{source.name}" ({available})'
                )
        return result

    def _update_warnings(
        self,
        result: ValidationResult,
        previous: "Expense",
        category_id: int,
        source_fund_id: Optional[int],
        destination_fund_id: Optional[int],
    ) -> None:
        if previous.category_id != category_id:
            old_label = self.categories.fund_label(previous.category_id)
            new_label = self.categories.fund_label(category_id)
            if old_label != new_label:
                result.warnings.append(
                    f'Category change moves this expense from fund "{old_label}" '
                    f'to fund "{new_label}"'
                )
        if previous.source_fund_id != source_fund_id:
            names = self.funds.names(
                {i for i in (previous.source_fund_id, source_fund_id) if i is not None}
            )
            result.warnings.append(
                "Source fund will change from "
                f'"{names.get(previous.source_fund_id, "none")}" '
                f'to "{names.get(source_fund_id, "none")}"'
            )
        if previous.destination_fund_id != destination_fund_id:
            names = self.funds.names(
                {
                    i
                    for i in (previous.destination_fund_id, destination_fund_id)
                    if i is not None
                }
            )
            result.warnings.append(
                "Destination fund will change from "
                f'"{names.get(previous.destination_fund_id, "none")}" '
                f'to "{names.get(destination_fund_id, "none")}"'
            )
