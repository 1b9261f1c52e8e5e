"""
Provider Ladder

Ordered, per-category lists of candidate model backends. Ladders are static
configuration: the Apex Loop walks them top to bottom and never mutates them.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .tasks import TaskCategory

logger = logging.getLogger("apexcore.ladder")


class CostClass(str, Enum):
    FREE = "free"
    LOW = "low"
    STANDARD = "standard"
    PREMIUM = "premium"


class ProviderDescriptor(BaseModel):
    """
    A single rung on a provider ladder.

    Examples:
        ProviderDescriptor(id="groq/llama-3.1-8b-instant", cost_class="free", per_attempt_timeout=5)
        ProviderDescriptor(id="gemini/gemini-2.5-flash", max_attempts=2)
    """
    id: str = Field(..., min_length=1, description="Provider/model identifier passed to the adapter")
    cost_class: CostClass = Field(default=CostClass.STANDARD)
    max_attempts: int = Field(default=1, ge=1, description="Attempts before moving to the next rung")
    per_attempt_timeout: float = Field(default=30.0, gt=0, description="Seconds allowed per attempt")

    model_config = {"frozen": True}


# Gate deciding whether a provider is currently safe to use (e.g. quota checks)
ProviderGate = Callable[[str], bool]


class ProviderLadder:
    """
    Maps each task category to its ordered provider list.

    Ordering is a priority: REFLEX ladders start with the cheapest and
    fastest backends, MATH/PHYSICS ladders with the most capable ones.
    """

    def __init__(self, rungs: Optional[Mapping[Union[TaskCategory, str], Iterable[ProviderDescriptor]]] = None):
        self._rungs: Dict[TaskCategory, Tuple[ProviderDescriptor, ...]] = {}
        for category, descriptors in (rungs or {}).items():
            self._rungs[TaskCategory(category)] = tuple(descriptors)

    def resolve(
        self,
        category: TaskCategory,
        preferred: Optional[str] = None,
        gate: Optional[ProviderGate] = None
    ) -> Tuple[ProviderDescriptor, ...]:
        """
        Get the ordered providers for a category.

        Args:
            category: The task category
            preferred: Provider id to promote to the front, if it is on this ladder
            gate: Optional availability check; if it rejects every rung the
                full ladder is used unchanged

        Returns:
            A tuple of descriptors, empty when the category is unmapped
        """
        ladder = self._rungs.get(category, ())

        if preferred:
            promoted = [d for d in ladder if d.id == preferred]
            if promoted:
                ladder = tuple(promoted) + tuple(d for d in ladder if d.id != preferred)
            else:
                logger.warning(f"Preferred provider '{preferred}' is not on the {category.value} ladder, ignoring")

        if gate is not None and ladder:
            available = tuple(d for d in ladder if gate(d.id))
            if available:
                ladder = available
            else:
                logger.warning(f"Every {category.value} provider failed its gate check, using full ladder")

        return ladder

    def categories(self) -> List[TaskCategory]:
        return [c for c, rungs in self._rungs.items() if rungs]

    def to_dict(self) -> Dict[str, List[Dict]]:
        return {
            category.value: [d.model_dump(mode="json") for d in rungs]
            for category, rungs in self._rungs.items()
        }

    def __contains__(self, category: TaskCategory) -> bool:
        return bool(self._rungs.get(category))

    def __len__(self) -> int:
        return len(self._rungs)

    def __repr__(self) -> str:
        return f"ProviderLadder(categories={[c.value for c in self.categories()]})"


def load_ladder(path: Union[str, Path]) -> ProviderLadder:
    """
    Load a ladder from a JSON file of the form `{"physics": [{"id": ...}, ...]}`.

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Ladder file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in ladder file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Ladder file {path} must contain a JSON object")

    try:
        rungs = {
            TaskCategory(category): [ProviderDescriptor.model_validate(d) for d in descriptors]
            for category, descriptors in data.items()
        }
    except (ValueError, ValidationError) as e:
        raise ConfigError(f"Invalid ladder in {path}: {e}") from e

    return ProviderLadder(rungs)


def _rung(id: str, cost: CostClass, attempts: int = 1, timeout: float = 30.0) -> ProviderDescriptor:
    return ProviderDescriptor(id=id, cost_class=cost, max_attempts=attempts, per_attempt_timeout=timeout)


_LOGIC = [
    _rung("gemini/gemini-2.5-flash", CostClass.PREMIUM, attempts=2, timeout=45.0),
    _rung("openrouter/deepseek/deepseek-r1", CostClass.STANDARD, timeout=60.0),
    _rung("gemini/gemini-2.5-flash-lite", CostClass.LOW),
]

_CONTEXT = [
    _rung("gemini/gemini-2.5-flash-lite", CostClass.LOW, attempts=2),
    _rung("openrouter/moonshotai/kimi-k2", CostClass.FREE, timeout=45.0),
    _rung("gemini/gemini-2.5-flash", CostClass.PREMIUM, timeout=45.0),
]

DEFAULT_LADDER = ProviderLadder({
    TaskCategory.MATH: _LOGIC,
    TaskCategory.GENERAL: _LOGIC,
    TaskCategory.CODE: _LOGIC,
    TaskCategory.PHYSICS: [
        _rung("gemini/gemini-2.5-flash", CostClass.PREMIUM, attempts=2, timeout=45.0),
        _rung("groq/llama-3.3-70b-versatile", CostClass.STANDARD, timeout=20.0),
        _rung("gemini/gemma-3-27b-it", CostClass.FREE),
    ],
    TaskCategory.VISION: [
        _rung("gemini/gemini-2.5-flash", CostClass.PREMIUM, timeout=60.0),
        _rung("openrouter/qwen/qwen-2.5-vl-72b-instruct", CostClass.STANDARD, timeout=60.0),
    ],
    TaskCategory.INGEST: _CONTEXT,
    TaskCategory.CHAT: _CONTEXT,
    TaskCategory.REFLEX: [
        _rung("groq/llama-3.1-8b-instant", CostClass.FREE, attempts=2, timeout=5.0),
        _rung("gemini/gemma-3-4b-it", CostClass.FREE, timeout=8.0),
        _rung("gemini/gemini-2.5-flash-lite", CostClass.LOW, timeout=10.0),
    ],
})
