from stageflow.rules.models import CRMValidationRule
from stageflow.rules.schemas import ValidationRuleCreate, ValidationRuleRead, ValidationRuleUpdate

__all__ = [
    "CRMValidationRule",
    "ValidationRuleCreate",
    "ValidationRuleRead",
    "ValidationRuleUpdate",
]
