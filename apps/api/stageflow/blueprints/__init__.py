from stageflow.blueprints.models import CRMBlueprint
from stageflow.blueprints.schemas import AvailableTransition, BlueprintRead, BlueprintUpsert, TransitionDefinition

__all__ = [
    "CRMBlueprint",
    "TransitionDefinition",
    "BlueprintUpsert",
    "BlueprintRead",
    "AvailableTransition",
]
