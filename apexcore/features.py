"""
Feature Tasks

The submission interface for feature call sites. Each function fixes a
category and output contract, builds the TaskRequest, and delegates to an
Apex Loop. Feature code never constructs requests by hand.

Example:
    loop = ApexLoop(adapter=LiteLLMProvider())
    result = await generate_world_state(loop, "Two billiard balls colliding")
    if result.success:
        world = result.output  # WorldState
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .apex import ApexLoop
from .cancellation import CancellationToken
from .schema import OutputContract
from .tasks import ProgressSink, TaskCategory, TaskRequest, TaskResult


# =============================================================================
# Output contracts
# =============================================================================

class Vector3(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class Environment(BaseModel):
    gravity: Vector3 = Field(default_factory=lambda: Vector3(y=-9.81))
    time_scale: float = Field(default=1.0, gt=0)
    biome: Optional[str] = None


class WorldEntity(BaseModel):
    id: str
    shape: str = "sphere"
    position: Vector3 = Field(default_factory=Vector3)
    velocity: Vector3 = Field(default_factory=Vector3)
    mass: float = Field(default=1.0, gt=0)
    color: str = "#ffffff"


class WorldState(BaseModel):
    """Structured world state consumed by the physics step and renderer."""
    scenario: str
    explanation: str = ""
    environment: Environment = Field(default_factory=Environment)
    entities: List[WorldEntity] = Field(default_factory=list)


class IntentTranslation(BaseModel):
    english_intent: str
    native_reply: str = ""
    detected_language: str = "en"


class DocumentSummary(BaseModel):
    title: str
    summary: str
    key_points: List[str] = Field(default_factory=list)


class CritiqueVerdict(BaseModel):
    """Guard verdict on user input. TRAP means the input must be blocked."""
    status: Literal["PASS", "TRAP"]
    message: str = ""


class MathSolution(BaseModel):
    answer: str
    steps: List[str] = Field(default_factory=list)
    numeric_value: Optional[float] = None


WORLD_STATE_CONTRACT = OutputContract(WorldState)
INTENT_CONTRACT = OutputContract(IntentTranslation)
SUMMARY_CONTRACT = OutputContract(DocumentSummary)
CRITIQUE_CONTRACT = OutputContract(CritiqueVerdict)
MATH_CONTRACT = OutputContract(MathSolution)


# =============================================================================
# Submission functions
# =============================================================================

async def _submit(
    loop: ApexLoop,
    category: TaskCategory,
    contract: OutputContract,
    prompt: str,
    system: str,
    preferred_provider: Optional[str] = None,
    progress_sink: Optional[ProgressSink] = None,
    cancel_token: Optional[CancellationToken] = None
) -> TaskResult:
    request = TaskRequest(
        category=category,
        prompt=prompt,
        output_contract=contract,
        preferred_provider=preferred_provider,
        progress_sink=progress_sink,
        system=system
    )
    return await loop.execute(request, cancel_token)


async def generate_world_state(
    loop: ApexLoop,
    description: str,
    context: str = "",
    **options
) -> TaskResult:
    """Turn a natural-language scene description into a WorldState."""
    prompt = f"Build a physics simulation for: {description}"
    if context:
        prompt += f"\n\nGrounding context:\n{context}"
    return await _submit(
        loop, TaskCategory.PHYSICS, WORLD_STATE_CONTRACT, prompt,
        system="You are a physics engine. Return a JSON world state with entities, environment and an explanation.",
        **options
    )


async def translate_intent(loop: ApexLoop, transcript: str, **options) -> TaskResult:
    """Translate a spoken/written request in any language into an English intent."""
    return await _submit(
        loop, TaskCategory.REFLEX, INTENT_CONTRACT, transcript,
        system="Translate the user's request into a concise English intent and reply in their language.",
        **options
    )


async def summarize_document(loop: ApexLoop, text: str, title: str = "", **options) -> TaskResult:
    """Summarize an ingested document into key points."""
    prompt = f"Document: {title}\n\n{text}" if title else text
    return await _submit(
        loop, TaskCategory.INGEST, SUMMARY_CONTRACT, prompt,
        system="Summarize the document. Return a title, a summary and the key points as JSON.",
        **options
    )


async def critique_input(loop: ApexLoop, user_input: str, **options) -> TaskResult:
    """Guard a user request: PASS lets it through, TRAP blocks it with a message."""
    return await _submit(
        loop, TaskCategory.REFLEX, CRITIQUE_CONTRACT, user_input,
        system="Decide whether this request is a physically meaningful simulation (PASS) or a trap (TRAP).",
        **options
    )


async def solve_math(loop: ApexLoop, problem: str, **options) -> TaskResult:
    """Solve a math problem step by step."""
    return await _submit(
        loop, TaskCategory.MATH, MATH_CONTRACT, problem,
        system="Solve the problem. Return the answer, the steps, and the numeric value when there is one.",
        **options
    )
