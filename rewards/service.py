import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from core.events import EventBus, ItemListed, ItemSold
from ledger.errors import (
    ConcurrentConflictError,
    IdempotencyConflictError,
    InvalidInputError,
    ProfileNotFoundError,
)
from ledger.models import SYSTEM_ACCOUNT, TransactionMetadata, TransactionType
from ledger.storage import InMemoryStorage, UnitOfWork
from ledger.transfers import Leg, TransferEngine

from .models import RewardProfile, SignupResult
from .rule_engine import ActionType, Rule, RuleEngine, TriggerEvent, create_default_rules

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERRAL_CODE_LENGTH = 8
PROFILE_FLAGS = frozenset({"has_posted_first_item", "has_made_first_sale", "referral_bonus_paid_out"})


def reward_key(account_id: str, kind: TransactionType, referee_id: Optional[str] = None) -> str:
    key = f"reward:{account_id}:{kind.value}"
    if referee_id:
        key = f"{key}:{referee_id}"
    return key


class RewardService:
    """Gamified bonuses paid from the system account.

    Each bonus is a system -> account leg posted in the same unit of work
    that flips the profile flag guarding it, under an idempotency key derived
    from the account and bonus kind, so duplicate events never pay twice.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        transfers: TransferEngine,
        events: Optional[EventBus] = None,
        rules: Optional[list[Rule]] = None,
        retry_attempts: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.transfers = transfers
        self.events = events or transfers.events
        self.retry_attempts = max(1, retry_attempts)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.engine = RuleEngine()
        self.engine.register_handler(ActionType.CREDIT_REWARD, self._handle_credit_reward)
        for rule in rules if rules is not None else create_default_rules():
            self.engine.add_rule(rule)

    def subscribe(self, events: Optional[EventBus] = None) -> None:
        bus = events or self.events
        bus.subscribe(ItemListed, self._on_item_listed)
        bus.subscribe(ItemSold, self._on_item_sold)

    def get_profile(self, account_id: str) -> RewardProfile:
        row = self.storage.read("profiles", account_id)
        if not row:
            raise ProfileNotFoundError(f"Reward profile for {account_id} not found")
        return RewardProfile(**row)

    def initialize_profile(
        self,
        account_id: str,
        email: str,
        referral_code: Optional[str] = None,
    ) -> SignupResult:
        if not email or "@" not in email:
            raise InvalidInputError("A valid email is required")

        try:
            profile, created = self._create_profile(account_id, email, referral_code)
        except ConcurrentConflictError:
            # a concurrent signup for the same account won; report its profile
            profile, created = self.get_profile(account_id), False

        if not created:
            logger.info("Profile for %s already initialized", account_id)
            return SignupResult(created=False, profile=profile)

        logger.info("Profile for %s initialized (referred_by=%s)", account_id, profile.referred_by)
        results = self.handle_event(TriggerEvent.ACCOUNT_CREATED, account_id)
        return SignupResult(created=True, profile=self.get_profile(account_id), rewards=results)

    def handle_event(self, trigger: TriggerEvent, account_id: str, event_data: Optional[dict] = None) -> list[dict]:
        row = self.storage.read("profiles", account_id)
        if not row:
            logger.warning("No reward profile for %s, skipping %s rules", account_id, trigger.value)
            return []

        profile = RewardProfile(**row)
        context = {
            "account": {"id": account_id, "email": profile.email},
            "profile": profile.model_dump(mode="json"),
            "referrer": {"id": profile.referred_by} if profile.referred_by else None,
            "event": event_data or {},
        }
        return self.engine.execute(trigger, context)

    def _on_item_listed(self, event: ItemListed) -> None:
        self.handle_event(TriggerEvent.ITEM_LISTED, event.owner_id, {"item_id": event.item_id})

    def _on_item_sold(self, event: ItemSold) -> None:
        self.handle_event(TriggerEvent.ITEM_SOLD, event.seller_id, {
            "item_id": event.item_id, "transaction_id": event.transaction_id, "price": event.price,
        })

    def _create_profile(self, account_id: str, email: str, referral_code: Optional[str]) -> tuple[RewardProfile, bool]:
        with self.storage.unit_of_work() as uow:
            existing = uow.get("profiles", account_id)
            if existing:
                return RewardProfile(**existing), False

            profile = RewardProfile(
                account_id=account_id,
                email=email.strip().lower(),
                referral_code=self._new_referral_code(uow),
                referred_by=self._resolve_referrer(uow, referral_code, account_id),
                created_at=self.clock(),
            )
            uow.insert("profiles", account_id, profile.model_dump())
            uow.insert("referral_codes", profile.referral_code, {"account_id": account_id})
        return profile, True

    def _new_referral_code(self, uow: UnitOfWork) -> str:
        while True:
            code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if uow.get("referral_codes", code) is None:
                return code

    def _resolve_referrer(self, uow: UnitOfWork, referral_code: Optional[str], account_id: str) -> Optional[str]:
        if not referral_code:
            return None
        row = uow.get("referral_codes", referral_code.strip().upper())
        if not row:
            logger.warning("Unknown referral code %r used by %s", referral_code, account_id)
            return None
        if row["account_id"] == account_id:
            logger.warning("Self-referral ignored for %s", account_id)
            return None
        return row["account_id"]

    def _handle_credit_reward(self, params: dict, context: dict) -> dict:
        account_id = context["account"]["id"]
        amount = int(params["amount"])
        kind = TransactionType(params["transaction_type"])
        flag = params.get("flag")
        if flag and flag not in PROFILE_FLAGS:
            raise InvalidInputError(f"Unknown reward flag {flag}")
        if amount <= 0:
            return {"action": "credit_reward", "status": "skipped", "reason": "zero amount"}

        # the keys are deterministic, so a unit that lost a race is re-run
        # against fresh state without risk of paying twice
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self._credit_once(account_id, amount, kind, flag, params)
            except ConcurrentConflictError:
                if attempt == self.retry_attempts:
                    raise
                logger.info("%s for %s conflicted, retry %d", kind.value, account_id, attempt)

    def _credit_once(self, account_id: str, amount: int, kind: TransactionType, flag: Optional[str], params: dict) -> dict:
        with self.storage.unit_of_work() as uow:
            profile = uow.get("profiles", account_id)
            if profile is None:
                raise ProfileNotFoundError(f"Reward profile for {account_id} not found")
            if flag and profile[flag]:
                return {"action": "credit_reward", "status": "skipped", "reason": f"{flag} already set"}

            targets = []
            for recipient in params.get("recipients", ["account"]):
                if recipient == "account":
                    targets.append(account_id)
                elif recipient == "referrer" and profile.get("referred_by"):
                    targets.append(profile["referred_by"])

            credited = []
            for target in targets:
                key = reward_key(target, kind, account_id if target != account_id else None)
                existing = self.transfers.idempotency.lookup_in(uow, key)
                if existing:
                    if existing.type != kind or existing.to_account != target:
                        raise IdempotencyConflictError(f"Reward key {key} is bound to transaction {existing.id}")
                    continue
                metadata = TransactionMetadata(
                    description=params.get("rule_id"),
                    extra={"triggered_by": account_id},
                )
                self.transfers.post(uow, [Leg(SYSTEM_ACCOUNT, target, amount, kind, metadata)], idempotency_key=key)
                credited.append(target)

            # every target is paid by now, either in this unit or an earlier one
            if flag:
                for target in targets:
                    row = profile if target == account_id else uow.get("profiles", target)
                    if row is not None and not row[flag]:
                        row[flag] = True
                        uow.put("profiles", target, row)

        if credited:
            logger.info("%s of %d credited to %s", kind.value, amount, ", ".join(credited))
        return {
            "action": "credit_reward",
            "status": "credited" if credited else "skipped",
            "amount": amount,
            "transaction_type": kind.value,
            "credited": credited,
        }
