from __future__ import annotations

from advisor_ai.errors import EmptyContext
from advisor_ai.types import Prompt, RetrievalResult, Trigger, state_json

ADVISORY_SYSTEM_PROMPT = (
    "You are a flight-deck safety advisor speaking to the crew in real time. "
    "Use only the procedures provided below. "
    "Reply with at most two short spoken sentences: the immediate action first, then the reason. "
    "No markdown, no lists, no prefix labels."
)

DISCLAIMER_SYSTEM_PROMPT = (
    "You are a flight-deck safety advisor speaking to the crew in real time. "
    "No reference procedure matched this condition. "
    "Reply with one short spoken sentence naming the condition and advising the crew "
    "to follow their approved checklist."
)

PROCEDURE_DELIMITER = "\n\n----- PROCEDURE -----\n\n"


class ContextAssembler:
    def __init__(
        self,
        *,
        system_prompt: str = ADVISORY_SYSTEM_PROMPT,
        delimiter: str = PROCEDURE_DELIMITER,
    ) -> None:
        self._system_prompt = system_prompt
        self._delimiter = delimiter

    def assemble(self, trigger: Trigger, results: RetrievalResult) -> Prompt:
        if len(results) == 0:
            raise EmptyContext(trigger.trigger_class)

        blocks = [
            f"[{hit.procedure.procedure_id}]\n{hit.procedure.text}"
            for hit in results
        ]
        return Prompt(
            trigger_class=trigger.trigger_class,
            system=self._system_prompt,
            context=self._delimiter.join(blocks),
            state_json=state_json(trigger.state),
        )

    def disclaimer_prompt(self, trigger: Trigger) -> Prompt:
        return Prompt(
            trigger_class=trigger.trigger_class,
            system=DISCLAIMER_SYSTEM_PROMPT,
            context=trigger.description or trigger.trigger_class,
            state_json=state_json(trigger.state),
        )
