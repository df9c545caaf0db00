"""
Reward Rules Package

Provides rule representation and evaluation for gamified bonuses (signup,
first listing, first sale, referral) and the service that pays them out
exactly once through the coin ledger.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ConditionOperator,
    ActionType,
    TriggerEvent,
    create_default_rules,
    load_rules,
)
from .models import RewardProfile
from .service import RewardService, reward_key

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ConditionOperator",
    "ActionType",
    "TriggerEvent",
    "create_default_rules",
    "load_rules",
    "RewardProfile",
    "RewardService",
    "reward_key",
]
