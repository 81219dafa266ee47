"""
Decision Engine — maps a conversation analysis and time context to one action.

Behavioral Contract:
- Pure. No I/O, no clock reads: the hour is passed in.
- Priority-ordered table, first match wins.
- Identical inputs always yield the identical action.
"""

from autopilot_kernel.models.decision import Action, Analysis


NIGHT_AFTER_HOUR = 22
NIGHT_BEFORE_HOUR = 7


def is_night(hour_of_day: int) -> bool:
    return hour_of_day > NIGHT_AFTER_HOUR or hour_of_day < NIGHT_BEFORE_HOUR


class DecisionEngine:
    """Chooses the next automated action for a reactive conversation."""

    def decide(
        self,
        analysis: Analysis,
        hour_of_day: int,
        is_optimal_time: bool,
    ) -> Action:
        # Night overrides everything, including a buying signal
        if is_night(hour_of_day):
            if analysis.buying_signal:
                return Action.SOFT_CLOSE_NIGHT
            return Action.AUTO_REPLY_NIGHT

        if analysis.buying_signal:
            if is_optimal_time:
                return Action.SEND_OFFER
            return Action.SEND_OFFER_SOFT

        intent_actions = {
            "question_price": Action.SEND_PRICE,
            "scheduling": Action.SEND_CALENDAR,
            "complaint": Action.HANDOVER_HUMAN,
            "objection": Action.HANDLE_OBJECTION,
        }
        if analysis.intent in intent_actions:
            return intent_actions[analysis.intent]

        if analysis.stage == "new":
            return Action.QUALIFY

        if analysis.stage == "closing":
            if analysis.sentiment == "positive" and not analysis.buying_signal:
                return Action.TRY_UPSELL
            return Action.SEND_CTA

        return Action.AI_CHAT
