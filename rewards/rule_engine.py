"""
Reward rules as data.

A rule pairs a trigger with a condition tree and a list of actions. Rules are
evaluated against a context dict of the form::

    {"account": {...}, "profile": {...}, "referrer": {...}, "event": {...}}

where condition fields are dotted paths into that dict. The ledger-backed
credit handler is registered by ``RewardService``; the engine itself only
dispatches.
"""

import json
import logging
import operator
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from core.config import RewardConfig
from ledger.models import TransactionType

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    IN = "in"
    MATCHES = "matches"
    IS_SET = "is_set"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    CREDIT_REWARD = "credit_reward"
    SEND_NOTIFICATION = "send_notification"


class TriggerEvent(str, Enum):
    ACCOUNT_CREATED = "account_created"
    ITEM_LISTED = "item_listed"
    ITEM_SOLD = "item_sold"
    MANUAL = "manual"


# operators that are meaningful on a missing value
_NULL_SAFE = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.IS_SET: lambda value, _: value is not None and value != "",
    ConditionOperator.IS_TRUE: lambda value, _: bool(value),
    ConditionOperator.IS_FALSE: lambda value, _: not value,
}

_COMPARISONS = {
    ConditionOperator.GREATER_THAN: operator.gt,
    ConditionOperator.LESS_THAN: operator.lt,
    ConditionOperator.GREATER_THAN_OR_EQUAL: operator.ge,
    ConditionOperator.LESS_THAN_OR_EQUAL: operator.le,
    ConditionOperator.CONTAINS: lambda value, needle: needle in value,
    ConditionOperator.IN: lambda value, options: bool(options) and value in options,
    ConditionOperator.MATCHES: lambda value, pattern: re.search(pattern, str(value), re.IGNORECASE) is not None,
}


def resolve_path(context: dict, path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        actual = resolve_path(context, self.field)
        if self.operator in _NULL_SAFE:
            return _NULL_SAFE[self.operator](actual, self.value)
        if actual is None:
            return False
        return _COMPARISONS[self.operator](actual, self.value)


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        combine = all if self.operator == LogicalOperator.AND else any
        # an empty group places no constraint
        return not self.conditions or combine(c.evaluate(context) for c in self.conditions)


Predicate = Union[Condition, ConditionGroup]


def parse_condition(data: dict) -> Predicate:
    if "conditions" in data:
        return ConditionGroup(
            operator=LogicalOperator(data["operator"]),
            conditions=[parse_condition(c) for c in data["conditions"]],
        )
    return Condition(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class Action:
    type: ActionType
    params: dict = field(default_factory=dict)
    # skip unless an earlier action of the same rule credited someone
    only_if_credited: bool = False


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    conditions: Predicate
    actions: list[Action]
    description: str = ""
    is_active: bool = True
    priority: int = 0

    def evaluate(self, context: dict) -> bool:
        return self.is_active and self.conditions.evaluate(context)

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        return cls(
            id=data["id"],
            name=data["name"],
            trigger=TriggerEvent(data["trigger"]),
            conditions=parse_condition(data["conditions"]),
            actions=[
                Action(
                    type=ActionType(a["type"]),
                    params=a.get("params", {}),
                    only_if_credited=a.get("only_if_credited", False),
                )
                for a in data["actions"]
            ],
            description=data.get("description", ""),
            is_active=data.get("is_active", True),
            priority=data.get("priority", 0),
        )


ActionHandler = Callable[[dict, dict], dict]


class RuleEngine:
    def __init__(self):
        self.rules: dict[str, Rule] = {}
        self.action_handlers: dict[ActionType, ActionHandler] = {
            ActionType.SEND_NOTIFICATION: self._send_notification,
        }

    def register_handler(self, action_type: ActionType, handler: ActionHandler) -> None:
        self.action_handlers[action_type] = handler

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def matching(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        candidates = [r for r in self.rules.values() if r.trigger == trigger]
        candidates.sort(key=lambda r: r.priority, reverse=True)
        return [r for r in candidates if r.evaluate(context)]

    def execute(self, trigger: TriggerEvent, context: dict) -> list[dict]:
        # every rule sees the context as it was before any action ran
        return [self._run(rule, context) for rule in self.matching(trigger, context)]

    def _run(self, rule: Rule, context: dict) -> dict:
        executed = []
        credited = False
        for action in rule.actions:
            if action.only_if_credited and not credited:
                executed.append({"type": action.type.value, "success": True, "result": {"status": "skipped"}})
                continue
            handler = self.action_handlers.get(action.type)
            if handler is None:
                logger.warning("No handler registered for %s in rule %s", action.type.value, rule.id)
                continue
            try:
                result = handler({**action.params, "rule_id": rule.id}, context)
            except Exception as e:
                logger.warning("Rule %s action %s failed: %s", rule.id, action.type.value, e)
                executed.append({"type": action.type.value, "success": False, "error": str(e)})
                continue
            credited = credited or (result or {}).get("status") == "credited"
            executed.append({"type": action.type.value, "success": True, "result": result})
        return {"rule_id": rule.id, "rule_name": rule.name, "actions_executed": executed}

    def _send_notification(self, params: dict, context: dict) -> dict:
        account = context.get("account") or {}
        logger.info("Notify %s: %s", account.get("id"), params.get("template"))
        return {"action": "send_notification", "template": params.get("template"), "status": "sent"}


def _credit(amount: int, kind: TransactionType, flag: Optional[str] = None, recipients: Optional[list[str]] = None) -> Action:
    params = {"amount": amount, "transaction_type": kind.value, "recipients": recipients or ["account"]}
    if flag:
        params["flag"] = flag
    return Action(type=ActionType.CREDIT_REWARD, params=params)


def create_default_rules(config: Optional[RewardConfig] = None) -> list[Rule]:
    config = config or RewardConfig()
    first_listing = Condition("profile.has_posted_first_item", ConditionOperator.IS_FALSE)
    return [
        Rule(
            id="rule-signup-bonus",
            name="Campus Signup Bonus",
            trigger=TriggerEvent.ACCOUNT_CREATED,
            conditions=Condition("account.email", ConditionOperator.MATCHES, config.signup_email_pattern),
            actions=[_credit(config.signup_bonus, TransactionType.SIGNUP_BONUS)],
            priority=10,
        ),
        Rule(
            id="rule-first-post-bonus",
            name="First Listing Bonus",
            trigger=TriggerEvent.ITEM_LISTED,
            conditions=first_listing,
            actions=[_credit(config.first_post_bonus, TransactionType.FIRST_POST_BONUS, flag="has_posted_first_item")],
            priority=10,
        ),
        Rule(
            id="rule-referral-bonus",
            name="Referral Bonus",
            trigger=TriggerEvent.ITEM_LISTED,
            conditions=ConditionGroup(LogicalOperator.AND, [
                Condition("profile.referred_by", ConditionOperator.IS_SET),
                first_listing,
                Condition("profile.referral_bonus_paid_out", ConditionOperator.IS_FALSE),
            ]),
            actions=[
                _credit(config.referral_bonus, TransactionType.REFERRAL_BONUS,
                        flag="referral_bonus_paid_out", recipients=["account", "referrer"]),
                Action(ActionType.SEND_NOTIFICATION, {"template": "referral_bonus_paid"}, only_if_credited=True),
            ],
            priority=5,
        ),
        Rule(
            id="rule-first-sale-bonus",
            name="First Sale Bonus",
            trigger=TriggerEvent.ITEM_SOLD,
            conditions=Condition("profile.has_made_first_sale", ConditionOperator.IS_FALSE),
            actions=[_credit(config.first_sale_bonus, TransactionType.FIRST_SALE_BONUS, flag="has_made_first_sale")],
            priority=10,
        ),
    ]


def load_rules(path: Union[str, Path]) -> list[Rule]:
    """Load rules from a JSON list, or an object with a ``rules`` list."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("rules", [])
    rules = [Rule.from_dict(r) for r in data]
    logger.info("Loaded %d reward rules from %s", len(rules), path)
    return rules
