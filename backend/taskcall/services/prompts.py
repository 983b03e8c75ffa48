from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from taskcall.core.config import settings
from taskcall.models.schemas import DialogueState


@dataclass(frozen=True)
class Prompt:
    text: str
    end: bool = False


PROMPTS: Dict[DialogueState, Prompt] = {
    DialogueState.INTRO: Prompt(
        "નમસ્તે, હું દરિયાપુરના ધારાસભ્ય કૌશિક જૈનના ઇ-કાર્યાલય તરફથી બોલું છું. "
        "શું હું આપનો થોડો સમય લઈ શકું?"
    ),
    DialogueState.TASK_CHECK: Prompt(
        "કૃપા કરીને જણાવશો કે યોજનાકીય કેમ્પ દરમિયાન આપનું કામ પૂર્ણ થયું છે કે નહીં?"
    ),
    DialogueState.RETRY_TASK_CHECK: Prompt(
        "માફ કરશો, હું સ્પષ્ટ સમજી શક્યો નથી. "
        "કૃપા કરીને ફરીથી કહેશો, આપનું કામ પૂર્ણ થયું છે કે નહીં?"
    ),
    DialogueState.CONFIRM_TASK: Prompt(
        "ફક્ત પુષ્ટિ માટે પૂછું છું, આપનું કામ પૂર્ણ થયું છે કે હજુ બાકી છે?"
    ),
    DialogueState.TASK_DONE: Prompt(
        "ખૂબ આનંદ થયો કે આપનું કામ પૂર્ણ થયું છે. આભાર.",
        end=True,
    ),
    DialogueState.TASK_PENDING: Prompt(
        "માફ કરશો કે આપનું કામ હજુ પૂર્ણ થયું નથી. "
        "કૃપા કરીને આપની સમસ્યાની વિગતો જણાવશો."
    ),
    DialogueState.PROBLEM_RECORDED: Prompt(
        "આભાર. આપની માહિતી નોંધાઈ ગઈ છે. અમારી ટીમ જલદી જ સંપર્ક કરશે.",
        end=True,
    ),
    DialogueState.ESCALATE: Prompt(
        "માફ કરશો, તમારી માહિતી સ્પષ્ટ રીતે મળી નથી. અમે તમને માનવીય સહાયક સાથે જોડશું.",
        end=True,
    ),
    DialogueState.CALLBACK_TIME: Prompt(
        "કોઈ વાંધો નહીં. કૃપા કરીને જણાવશો કે અમે આપને ક્યારે ફરીથી ફોન કરીએ?"
    ),
    DialogueState.CALLBACK_CONFIRM: Prompt(
        "આભાર. આપે જણાવેલા સમયે અમે આપને ફરીથી ફોન કરીશું.",
        end=True,
    ),
}

# Played when a turn fails internally; never a technical message.
FALLBACK_STATE = DialogueState.RETRY_TASK_CHECK


def prompt_for(state: DialogueState) -> Prompt:
    return PROMPTS[state]


def is_terminal(state: DialogueState) -> bool:
    if state is DialogueState.CALLBACK_CONFIRM:
        return bool(settings.CALLBACK_CONFIRM_TERMINAL)
    return PROMPTS[state].end


def audio_key(state: DialogueState) -> str:
    return state.value
