# judge.py
# LLM-as-judge critique of a structured assessment.
#
# A second model call scores an assessment on four weighted dimensions. The
# verdict goes through the recovery parser. A verdict that is not a JSON
# object raises JudgeError; a missing dimension gets a neutral score.

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from careloop.errors import JudgeError
from careloop.models import TokenUsage, utcnow
from careloop.providers import TextGenerator
from careloop.recovery import extract_object
from careloop.tracing import Tracer

logger = logging.getLogger(__name__)

DIMENSION_WEIGHTS = {
    "safety": 0.4,
    "accuracy": 0.25,
    "actionability": 0.2,
    "completeness": 0.15,
}
NEUTRAL_SCORE = 0.5
SAFETY_THRESHOLD = 0.7

JUDGE_SYSTEM_PROMPT = """\
You are a senior clinician reviewing an AI-generated discharge readiness \
assessment. Score it on four dimensions, each from 0.0 to 1.0:

- safety: does it flag every risk that could harm the patient after discharge?
- accuracy: are its findings supported by the patient context?
- actionability: can the care team act on its recommendations directly?
- completeness: does it cover medications, labs, follow-up and education?

Be critical but fair. Respond with ONLY a JSON object:
{
  "safety": {"score": 0.0, "reasoning": "..."},
  "accuracy": {"score": 0.0, "reasoning": "..."},
  "actionability": {"score": 0.0, "reasoning": "..."},
  "completeness": {"score": 0.0, "reasoning": "..."},
  "summary": "One or two sentences on the overall quality"
}\
"""


class JudgeScore(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str


class JudgeEvaluation(BaseModel):
    safety: JudgeScore
    accuracy: JudgeScore
    actionability: JudgeScore
    completeness: JudgeScore
    overall: float
    summary: str
    model: str = ""
    usage: TokenUsage | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class SafetyCheck(BaseModel):
    passes: bool
    score: float
    reasoning: str


def build_judge_prompt(assessment: Mapping[str, Any] | str, context: str = "") -> str:
    if not isinstance(assessment, str):
        assessment = json.dumps(assessment, indent=2, default=str, ensure_ascii=False)
    parts = []
    if context.strip():
        parts.append(f"PATIENT CONTEXT:\n{context.strip()}\n\n---\n")
    parts.append(f"AI ASSESSMENT TO EVALUATE:\n{assessment}\n\n---\n")
    parts.append("Evaluate this assessment on the four dimensions described.")
    return "\n".join(parts)


def _score(data: Any, dimension: str) -> JudgeScore:
    if isinstance(data, Mapping):
        raw = data.get("score")
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return JudgeScore(
                score=min(max(float(raw), 0.0), 1.0),
                reasoning=str(data.get("reasoning") or ""),
            )
    logger.warning("[Judge] Missing or malformed %s score: %r", dimension, data)
    return JudgeScore(
        score=NEUTRAL_SCORE,
        reasoning=f"Unable to extract {dimension} evaluation from the judge response",
    )


def parse_verdict(content: str) -> tuple[dict[str, JudgeScore], str]:
    """Read the judge's JSON verdict. Raises JudgeError when there is none."""
    recovered = extract_object(content)
    if not recovered.ok:
        raise JudgeError(f"Judge returned no usable verdict: {recovered.detail}", content=content)
    data = recovered.value
    scores = {dimension: _score(data.get(dimension), dimension) for dimension in DIMENSION_WEIGHTS}
    summary = data.get("summary")
    return scores, summary if isinstance(summary, str) and summary.strip() else "Evaluation completed"


def weighted_overall(scores: Mapping[str, JudgeScore]) -> float:
    total = sum(scores[d].score * weight for d, weight in DIMENSION_WEIGHTS.items())
    return round(total, 2)


async def evaluate(
    provider: TextGenerator,
    assessment: Mapping[str, Any] | str,
    context: str = "",
    tracer: Tracer | None = None,
) -> JudgeEvaluation:
    """
    Critique `assessment` with one model call.

    Raises ProviderError if the model call fails and JudgeError if the
    response holds no JSON object.
    """
    trace = (tracer or Tracer()).trace("llm-judge-evaluation", {"judge_model": provider.model})
    try:
        response = await provider.generate(
            build_judge_prompt(assessment, context),
            system_prompt=JUDGE_SYSTEM_PROMPT,
            metadata={"span_name": "llm-judge-call", "purpose": "evaluation"},
        )
        scores, summary = parse_verdict(response.content)
    except Exception as exc:
        trace.end(error=str(exc) or type(exc).__name__)
        raise

    evaluation = JudgeEvaluation(
        **scores,
        overall=weighted_overall(scores),
        summary=summary,
        model=response.model,
        usage=response.token_usage,
    )
    logger.info("[Judge] overall=%.2f safety=%.2f", evaluation.overall, evaluation.safety.score)
    trace.end(
        overall=evaluation.overall,
        **{f"{d}_score": getattr(evaluation, d).score for d in DIMENSION_WEIGHTS},
    )
    return evaluation


async def quick_safety_check(
    provider: TextGenerator,
    assessment: Mapping[str, Any] | str,
    context: str = "",
    threshold: float = SAFETY_THRESHOLD,
) -> SafetyCheck:
    evaluation = await evaluate(provider, assessment, context)
    return SafetyCheck(
        passes=evaluation.safety.score >= threshold,
        score=evaluation.safety.score,
        reasoning=evaluation.safety.reasoning,
    )
