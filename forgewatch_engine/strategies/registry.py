from typing import Dict, Type

from ..job import BuildMethod
from .base import BuildStrategy
from .image import ImageBuildStrategy
from .pipeline import PipelineBuildStrategy
from .script import ScriptBuildStrategy

STRATEGIES: Dict[BuildMethod, Type[BuildStrategy]] = {
    BuildMethod.IMAGE: ImageBuildStrategy,
    BuildMethod.SCRIPT: ScriptBuildStrategy,
    BuildMethod.PIPELINE: PipelineBuildStrategy,
}

_missing = set(BuildMethod) - set(STRATEGIES)
if _missing:
    raise ImportError(f"No build strategy registered for: {sorted(m.value for m in _missing)}")


def get_strategy(method: BuildMethod) -> BuildStrategy:
    return STRATEGIES[BuildMethod(method)]()
