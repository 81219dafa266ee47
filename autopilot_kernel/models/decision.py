"""Conversation analysis and the fixed action vocabulary of the decision engine."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Action(str, Enum):
    SOFT_CLOSE_NIGHT = "soft_close_night"
    AUTO_REPLY_NIGHT = "auto_reply_night"
    SEND_OFFER = "send_offer"
    SEND_OFFER_SOFT = "send_offer_soft"
    SEND_PRICE = "send_price"
    SEND_CALENDAR = "send_calendar"
    HANDOVER_HUMAN = "handover_human"    # Terminal: the engine steps back
    HANDLE_OBJECTION = "handle_objection"
    QUALIFY = "qualify"
    TRY_UPSELL = "try_upsell"
    SEND_CTA = "send_cta"
    AI_CHAT = "ai_chat"
    LEAD_UNLOCKER = "lead_unlocker"      # Proactive phase only
    FOLLOW_UP = "follow_up"


class Analysis(BaseModel):
    """Structured classifier output for one conversation."""

    intent: str = "unknown"       # question_price | question_product | complaint | greeting
                                  # | scheduling | buying | objection | unknown
    sentiment: str = "neutral"    # positive | neutral | negative
    buying_signal: bool = False
    stage: Optional[str] = None   # new | negotiation | closing | support


DEFAULT_ANALYSIS = Analysis()
