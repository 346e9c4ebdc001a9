# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Streams one run in-process: emitter frames are fed straight into a
# consumer whose callbacks render each step as it happens.
# Pick any model id from careloop.providers.MODEL_CONFIGS.

import asyncio

from careloop import display
from careloop.coach_tools import ClinicalLookups, Medication, PatientContext, build_coach_capabilities
from careloop.config import DEFAULT_MODEL, configure_logging
from careloop.harness import ReActLoop, fallback_answer
from careloop.models import RunRequest, RunResult, RunStatus
from careloop.providers import create_provider
from careloop.stream import ProgressEmitter, StreamConsumer

SYSTEM_PROMPT = (
    "You are a patient recovery coach helping a patient who was recently discharged "
    "from hospital. Answer in plain, reassuring language and always recommend contacting "
    "the care team for anything urgent."
)

PROMPTS = [
    "I feel a bit dizzy when I stand up. Is that from one of my pills?",
    "When do I need to get my blood checked again?",
]

PATIENT = PatientContext(
    patient_id="local-demo",
    medications=[
        Medication(name="Lisinopril", dose="10 mg", frequency="once daily"),
        Medication(name="Warfarin", dose="5 mg", frequency="once daily"),
    ],
    high_risk=True,
)


async def _no_record(_: str) -> None:
    return None


async def main_async() -> None:
    provider = create_provider(DEFAULT_MODEL)
    loop = ReActLoop(provider)
    emitter = ProgressEmitter(loop)
    lookups = ClinicalLookups(
        medication_info=_no_record,
        symptom_urgency=_no_record,
        explain_term=_no_record,
    )

    def on_complete(result: RunResult) -> None:
        display.run_summary(result)
        if result.status is RunStatus.DONE:
            display.final_result(result.answer or "")
        else:
            display.exhausted(fallback_answer(result))

    try:
        for prompt in PROMPTS:
            registry = build_coach_capabilities(PATIENT, lookups)
            display.banner(provider.model, registry.names())
            display.prompt_received(prompt)
            consumer = StreamConsumer(
                on_thought=display.react_thought,
                on_action=display.react_action,
                on_observation=display.react_observation,
                on_complete=on_complete,
                on_error=display.stream_error,
            )
            request = RunRequest(prompt=prompt, system_prompt=SYSTEM_PROMPT, tools=registry, max_iterations=5)
            await consumer.consume(emitter.stream(request))
    finally:
        await provider.aclose()


def main() -> None:
    configure_logging()
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
