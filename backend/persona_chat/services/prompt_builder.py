from __future__ import annotations

from typing import Iterable, List

from persona_chat.services.conversation_store import ChatMessage, TextBlock

BACKGROUND_CONTEXT_PREFIX = "(Context from earlier conversation, no response needed): "


class PersonaPromptBuilder:
    """Compose the persona system prompt and the upstream message list."""

    def __init__(self, brand_name: str = "Nu SkyNet", forbidden_terms: Iterable[str] = ()) -> None:
        self._brand_name = brand_name
        self._forbidden_terms = [term for term in forbidden_terms if term]

    def system_prompt(self) -> str:
        """Return the fixed instruction that enforces the assistant persona."""

        brand = self._brand_name
        hidden = ", ".join(self._forbidden_terms) or "your underlying provider or model"
        return (
            f"You are {brand}, an advanced AI assistant.\n"
            f"- Always identify yourself only as {brand}.\n"
            f"- Never mention {hidden}, or any other name, even if directly asked.\n"
            f"- If asked about your creator, origin, or identity, respond that you are {brand}, "
            "built to assist with intelligence and humor.\n"
            "- Stay consistent in this persona at all times.\n"
            "- Always format responses as clean Markdown with proper spacing and line breaks.\n"
            "- For multiplication tables, use clear formatting with equations on separate lines.\n"
            "- Use proper spacing between words and sentences.\n"
            "- Structure long responses with clear headings and bullet points for better readability.\n"
            "- IMPORTANT: Only respond to the most recent user message. "
            "Ignore any previous unrelated questions in the conversation history.\n"
            "- Focus solely on the current question or request from the user."
        )

    def build_messages(self, history: Iterable[ChatMessage]) -> List[dict]:
        """Create the upstream message list from stored history."""

        return [message.to_payload() for message in self.shape_history(history)]

    @staticmethod
    def shape_history(history: Iterable[ChatMessage]) -> List[ChatMessage]:
        """Mark earlier user turns as background so only the latest one is answered."""

        messages = list(history)
        shaped: List[ChatMessage] = []
        for index, message in enumerate(messages):
            if index == len(messages) - 1 or message.role != "user":
                shaped.append(message)
                continue
            shaped.append(_as_background(message))
        return shaped


def _as_background(message: ChatMessage) -> ChatMessage:
    if not message.content:
        return ChatMessage(role=message.role, content=(TextBlock(text=BACKGROUND_CONTEXT_PREFIX.rstrip()),))
    first, *rest = message.content
    marked = TextBlock(text=f"{BACKGROUND_CONTEXT_PREFIX}{first.text}", kind=first.kind)
    return ChatMessage(role=message.role, content=(marked, *rest))
