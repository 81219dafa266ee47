"""
Intent Classifier — the boundary to the external AI text service.

Two capabilities behind one seam:
- classify(messages) -> Analysis (intent, sentiment, buying signal, stage)
- generate(instruction, messages, analysis) -> response text

The classifier is optional. Without one the kernel runs in rule-only mode:
a fixed neutral analysis and no generated text, so callers never null-check
a client. Backend failures surface as ClassifierError and callers degrade.
"""

import json
import logging
from typing import List, Optional

from openai import OpenAI, OpenAIError

from autopilot_kernel.models.crm import Message
from autopilot_kernel.models.decision import DEFAULT_ANALYSIS, Analysis

logger = logging.getLogger(__name__)


# Instruction templates keyed by generation type
GENERATION_TEMPLATES = {
    "offer": "Generate an irresistible offer closing for this context. Create Urgency. Keep it short.",
    "offer_soft": "Generate a gentle offer closing. Focus on value, no pressure.",
    "price": "Explain the price/value proposition. Be direct but persuasive.",
    "follow_up": "Re-engage this lead who went silent. Be polite but intriguing.",
    "lead_unlocker": (
        "The lead disappeared. Send a 'mental trigger' question to unlock them "
        "(e.g., 'Did you give up on X?'). Short and punchy."
    ),
    "objection": "Overcome the user's objection with empathy and authority.",
    "qualify": "Ask a qualifying question to understand their needs better.",
    "upsell": "Suggest a complementary product or upgrade (Upsell) naturally.",
    "send_cta": "Give a clear call to action to close the sale now. Keep it short.",
    "chat": "Reply naturally to the user's last message. Be helpful and concise.",
}

CLASSIFY_PROMPT = """Analyze this WhatsApp conversation.
History:
{history}

Return JSON:
- intent: (question_price, question_product, complaint, greeting, scheduling, buying, objection)
- sentiment: (positive, neutral, negative)
- buyingSignal: (boolean) - Is the user ready to buy?
- stage: (new, negotiation, closing, support)
"""

GENERATE_PROMPT = """You are a top-tier sales assistant on WhatsApp.
Context: User is {intent}.
Task: {task}
Last Message: {last_message}

Write the WhatsApp message response (Portuguese Brazil). No quotes.
"""


class ClassifierError(Exception):
    """Raised when the AI backend fails or returns something unusable."""
    pass


def format_history(messages: List[Message]) -> str:
    """Render newest-first messages as a chronological transcript."""
    return "\n".join(
        f"{m.direction.value}: {m.content}" for m in reversed(messages)
    )


class Classifier:
    """Classifier interface."""

    rule_only = False

    def classify(self, messages: List[Message]) -> Analysis:
        raise NotImplementedError

    def generate(
        self,
        instruction: str,
        messages: List[Message],
        analysis: Optional[Analysis] = None,
    ) -> Optional[str]:
        raise NotImplementedError


class RuleOnlyClassifier(Classifier):
    """No AI backend: neutral analysis, no generated text."""

    rule_only = True

    def classify(self, messages: List[Message]) -> Analysis:
        return DEFAULT_ANALYSIS

    def generate(
        self,
        instruction: str,
        messages: List[Message],
        analysis: Optional[Analysis] = None,
    ) -> Optional[str]:
        return None


class OpenAIClassifier(Classifier):
    """
    Chat-completions backed classifier and generator.

    `messages` are expected newest first, the order the CRM store returns
    them in.
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
    ):
        self.client = client or OpenAI(api_key=api_key)
        self.model = model

    def classify(self, messages: List[Message]) -> Analysis:
        prompt = CLASSIFY_PROMPT.format(history=format_history(messages))
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
            raw = completion.choices[0].message.content or "{}"
            data = json.loads(raw)
            return Analysis.model_validate(
                {
                    "intent": data.get("intent") or "unknown",
                    "sentiment": data.get("sentiment") or "neutral",
                    "buying_signal": data.get("buyingSignal", False),
                    "stage": data.get("stage"),
                }
            )
        except (OpenAIError, ValueError, AttributeError, IndexError) as e:
            # ValueError covers malformed JSON and pydantic ValidationError
            raise ClassifierError(f"Classification failed: {e}") from e

    def generate(
        self,
        instruction: str,
        messages: List[Message],
        analysis: Optional[Analysis] = None,
    ) -> Optional[str]:
        task = GENERATION_TEMPLATES.get(instruction, GENERATION_TEMPLATES["chat"])
        prompt = GENERATE_PROMPT.format(
            intent=(analysis.intent if analysis else None) or "interested",
            task=task,
            last_message=messages[0].content if messages else "",
        )
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
            text = completion.choices[0].message.content
        except (OpenAIError, AttributeError, IndexError) as e:
            raise ClassifierError(f"Generation failed: {e}") from e
        return text.strip() if text else None


def build_classifier(api_key: Optional[str], model: str = "gpt-4o-mini") -> Classifier:
    """OpenAI-backed when a key is configured, rule-only otherwise."""
    if not api_key:
        logger.info("No OPENAI_API_KEY configured, running in rule-only mode")
        return RuleOnlyClassifier()
    return OpenAIClassifier(api_key=api_key, model=model)
