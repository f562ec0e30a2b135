"""Checks a deal must pass before a document is issued for it."""

from decimal import Decimal

from deal_invoicing.config.bank_accounts import BankAccountConfig
from deal_invoicing.errors import DealValidationError
from deal_invoicing.models import BuyerSnapshot, Deal


def validate_deal(
    deal: Deal,
    buyer: BuyerSnapshot | None,
    bank_accounts: dict[str, BankAccountConfig],
) -> BuyerSnapshot:
    """Return the buyer, or raise :class:`DealValidationError` for the first problem found.

    The supported currencies are the keys of ``bank_accounts``, so an
    unsupported currency and a currency without a bank account are the same
    failure.
    """
    if buyer is None:
        raise DealValidationError(deal.id, "deal has no person or organization")
    if not buyer.email:
        raise DealValidationError(deal.id, "customer email is required")
    if not deal.currency:
        raise DealValidationError(deal.id, "deal currency is missing")
    if deal.currency not in bank_accounts:
        supported = ", ".join(sorted(bank_accounts)) or "none"
        raise DealValidationError(
            deal.id,
            f"unsupported currency {deal.currency} (supported: {supported})",
        )
    if deal.amount <= Decimal("0"):
        raise DealValidationError(deal.id, f"deal amount must be positive, got {deal.amount}")
    return buyer
