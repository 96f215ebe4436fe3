"""
Two-Stage Draft Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Amount is positive
- Destination account present iff the draft is a transfer
- Source and destination differ
- Owner present
- Needs no storage, so it runs before anything is read or written

STAGE 2 - REFERENCE VALIDATION:
- Every referenced account, savings goal, loan and category exists
- Every referenced row belongs to the draft's owner
- Loads the EffectContext the engine then plans effects from

IMPORTANT: Validation NEVER silently fixes issues. Both stages collect
every issue they find and raise a single ValidationError.
"""

from decimal import Decimal
from typing import Optional

from finance_ledger.ledger.effects import EffectContext, EffectPlanner
from finance_ledger.ledger.errors import ValidationError
from finance_ledger.models.ledger import TransactionDraft, TransactionKind


class DraftValidator:
    """
    Validates transaction drafts through a two-stage pipeline.

    Stage 1: Schema validation (can run without storage)
    Stage 2: Reference validation (reads the store)
    """

    def __init__(self, planner: EffectPlanner):
        self._planner = planner

    def validate_schema(self, draft: TransactionDraft) -> None:
        """Stage 1. Raises ValidationError listing every issue found."""
        issues = []

        if not draft.owner_id:
            issues.append("Owner is required")

        if not draft.account_id:
            issues.append("Source account is required")

        if draft.amount is None or draft.amount <= Decimal("0"):
            issues.append(f"Amount must be greater than zero (got {draft.amount})")

        if draft.kind == TransactionKind.TRANSFER:
            if not draft.to_account_id:
                issues.append("A transfer requires a destination account")
            elif draft.to_account_id == draft.account_id:
                issues.append("Transfer source and destination must differ")
        elif draft.to_account_id:
            issues.append(f"Only transfers have a destination account (kind is {draft.kind.value})")

        if issues:
            raise ValidationError("; ".join(issues), issues)

    async def validate_references(
        self,
        draft: TransactionDraft,
        owner_id: Optional[str] = None,
    ) -> EffectContext:
        """
        Stage 2. Loads every referenced row and checks its owner.

        Raises NotFoundError for a missing reference, ValidationError for
        one that belongs to someone else.
        """
        owner_id = owner_id or draft.owner_id
        context = await self._planner.load_context(draft, strict=True)

        issues = []
        for account_id in draft.account_ids():
            if context.accounts[account_id].owner_id != owner_id:
                issues.append(f"Account {account_id} does not belong to owner {owner_id}")
        if context.savings_goal is not None and context.savings_goal.owner_id != owner_id:
            issues.append(f"Savings goal {context.savings_goal.id} does not belong to owner {owner_id}")
        if context.loan is not None and context.loan.owner_id != owner_id:
            issues.append(f"Loan {context.loan.id} does not belong to owner {owner_id}")
        if draft.category_id:
            category = await self._planner.get_category(draft.category_id)
            # Categories without an owner are shared
            if category.owner_id is not None and category.owner_id != owner_id:
                issues.append(f"Category {category.id} does not belong to owner {owner_id}")

        if issues:
            raise ValidationError("; ".join(issues), issues)
        return context

    async def validate(self, draft: TransactionDraft) -> EffectContext:
        """Run both stages; stage 2 is skipped if stage 1 fails."""
        self.validate_schema(draft)
        return await self.validate_references(draft)
