"""
Consistency audit over the transaction log.

Balances are recomputed from COMPLETED transactions and compared against the
stored balances, and every purchase settlement is checked for
``buyer_debit == seller_credit + platform_fee``. Accounts named in any
finding are frozen so that no further writes land on them until an operator
reconciles them and calls ``unfreeze``.
"""

import logging
from collections import defaultdict

from .models import (
    SYSTEM_ACCOUNT,
    AuditFinding,
    AuditReport,
    Transaction,
    TransactionType,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class LedgerAuditor:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def audit(self, freeze: bool = True) -> AuditReport:
        tables = self.storage.snapshot_many(["transactions", "accounts"])
        transactions = [Transaction(**row) for row in tables["transactions"]]
        accounts = {row["account_id"]: row["balance"] for row in tables["accounts"]}

        findings = self._check_balances(transactions, accounts)
        settlements = self._group_settlements(transactions)
        findings.extend(self._check_settlements(settlements))

        frozen = []
        if freeze:
            for account_id in sorted({a for f in findings for a in f.accounts}):
                if not self.storage.is_frozen(account_id):
                    self.storage.freeze(account_id)
                    frozen.append(account_id)

        if findings:
            logger.error("Ledger audit found %d inconsistencies", len(findings))
        else:
            logger.info("Ledger audit clean: %d accounts, %d settlements", len(accounts), len(settlements))

        return AuditReport(
            checked_accounts=len(accounts),
            checked_settlements=len(settlements),
            findings=findings,
            frozen_accounts=frozen,
        )

    def unfreeze(self, account_id: str) -> bool:
        return self.storage.unfreeze(account_id)

    def _check_balances(self, transactions: list[Transaction], accounts: dict[str, int]) -> list[AuditFinding]:
        expected: dict[str, int] = defaultdict(int)
        for txn in transactions:
            expected[txn.from_account] += txn.delta_for(txn.from_account)
            expected[txn.to_account] += txn.delta_for(txn.to_account)

        # the system balance is derived from the log, there is nothing stored to compare
        expected.pop(SYSTEM_ACCOUNT, None)

        findings = []
        for account_id in sorted(set(expected) | set(accounts)):
            stored = accounts.get(account_id, 0)
            if stored != expected[account_id]:
                findings.append(AuditFinding(
                    kind="balance_mismatch",
                    accounts=[account_id],
                    detail=f"stored balance {stored} != ledger total {expected[account_id]}",
                ))
            if stored < 0:
                findings.append(AuditFinding(
                    kind="negative_balance",
                    accounts=[account_id],
                    detail=f"balance {stored} is negative",
                ))
        return findings

    def _group_settlements(self, transactions: list[Transaction]) -> dict[str, list[Transaction]]:
        settlements: dict[str, list[Transaction]] = defaultdict(list)
        for txn in transactions:
            if txn.type == TransactionType.ITEM_PURCHASE and txn.metadata.settlement_id:
                settlements[txn.metadata.settlement_id].append(txn)
        return settlements

    def _check_settlements(self, settlements: dict[str, list[Transaction]]) -> list[AuditFinding]:
        findings = []
        for settlement_id, legs in settlements.items():
            buyer_legs = [t for t in legs if t.to_account == SYSTEM_ACCOUNT]
            seller_legs = [t for t in legs if t.from_account == SYSTEM_ACCOUNT]
            involved = sorted({t.from_account for t in buyer_legs} | {t.to_account for t in seller_legs})

            if len(buyer_legs) != 1 or len(seller_legs) > 1:
                findings.append(AuditFinding(
                    kind="malformed_settlement",
                    accounts=involved,
                    detail=f"settlement {settlement_id} has {len(buyer_legs)} buyer and {len(seller_legs)} seller legs",
                ))
                continue

            buyer_leg = buyer_legs[0]
            fee = buyer_leg.metadata.platform_fee or 0
            seller_credit = seller_legs[0].amount if seller_legs else 0
            if buyer_leg.amount != seller_credit + fee:
                findings.append(AuditFinding(
                    kind="escrow_imbalance",
                    accounts=involved,
                    detail=f"settlement {settlement_id}: debit {buyer_leg.amount} != credit {seller_credit} + fee {fee}",
                ))
        return findings
