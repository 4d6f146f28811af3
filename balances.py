"""Fund balance bookkeeping for expenses.

An expense debits its source fund and, when it is a transfer, credits its
destination fund. ``BalanceEngine`` applies those effects to the cached
``funds.current_balance_cents`` column and reverts them again, always with
relative ``UPDATE`` statements so concurrent writers never overwrite each
other's deltas. Updates are handled as revert-then-reapply: the old effect
is undone in full before the new one is applied, which stays correct when
the source or destination fund itself changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from models import Expense
    from services import CategoryService, FundService


logger = logging.getLogger(__name__)


class ConsistencyError(RuntimeError):
    """A balance step could not be applied after the record was written."""


@dataclass(frozen=True)
class BalanceEffect:
    amount_cents: int
    source_fund_id: Optional[int]
    destination_fund_id: Optional[int] = None

    @classmethod
    def of(cls, expense: "Expense") -> "BalanceEffect":
        return cls(
            amount_cents=expense.amount_cents,
            source_fund_id=expense.source_fund_id,
            destination_fund_id=expense.destination_fund_id,
        )

    @property
    def is_transfer(self) -> bool:
        return self.destination_fund_id is not None

    def deltas(self) -> list[tuple[int, int]]:
        """Signed per-fund deltas this effect contributes when applied."""
        out: list[tuple[int, int]] = []
        if self.source_fund_id is not None:
            out.append((self.source_fund_id, -self.amount_cents))
        if self.destination_fund_id is not None:
            out.append((self.destination_fund_id, self.amount_cents))
        return out


class SourceFundResolver(Protocol):
    mode: str

    def resolve(
        self, category_id: int, requested_fund_id: Optional[int]
    ) -> Optional[int]: ...


class DirectSourceFundResolver:
    """The source fund is whatever the caller stored on the expense."""

    mode = "direct"

    def resolve(
        self, category_id: int, requested_fund_id: Optional[int]
    ) -> Optional[int]:
        return requested_fund_id


class CategoryDerivedSourceFundResolver:
    """The source fund is the fund of the expense's category."""

    mode = "category"

    def __init__(self, categories: "CategoryService") -> None:
        self.categories = categories

    def resolve(
        self, category_id: int, requested_fund_id: Optional[int]
    ) -> Optional[int]:
        fund_id = self.categories.primary_fund_id(category_id)
        if requested_fund_id is not None and requested_fund_id != fund_id:
            logger.info(
                f"source_fund_ignored: category_id={category_id} "
                f"requested={requested_fund_id} resolved={fund_id}"
            )
        return fund_id


def build_source_fund_resolver(
    mode: str, categories: "CategoryService"
) -> SourceFundResolver:
    if mode == "direct":
        return DirectSourceFundResolver()
    if mode == "category":
        return CategoryDerivedSourceFundResolver(categories)
    raise ValueError(f"Unknown source fund mode: {mode}")


class BalanceEngine:
    def __init__(self, funds: "FundService") -> None:
        self.funds = funds

    def _adjust(self, fund_id: int, delta_cents: int, *, reason: str) -> None:
        if not self.funds.adjust_balance(fund_id, delta_cents):
            raise ConsistencyError(
                f"Balance step failed: fund_id={fund_id} delta_cents={delta_cents} "
                f"reason={reason}"
            )

    def apply(self, effect: BalanceEffect) -> None:
        if effect.source_fund_id is None:
            logger.warning(
                f"balance_apply_without_source: amount_cents={effect.amount_cents}"
            )
        for fund_id, delta in effect.deltas():
            self._adjust(fund_id, delta, reason="apply")

    def revert(self, effect: BalanceEffect) -> None:
        if effect.source_fund_id is None:
            logger.warning(
                f"balance_revert_without_source: amount_cents={effect.amount_cents}"
            )
        for fund_id, delta in effect.deltas():
            self._adjust(fund_id, -delta, reason="revert")
