from typing import List, Optional

from .config import GREETING
from .schemas import ChatMessage

ERROR_MESSAGE = "⚠️ Error: Could not get a response."


class Conversation:
    """The single in-memory chat session.

    Messages are append-only. The seeded system greeting is part of the history
    sent to the engine but is never displayed. ``session`` changes on every
    reset; a reply that arrives for an older session is dropped.
    """

    def __init__(self, greeting: Optional[str] = GREETING):
        self.greeting = greeting
        self.messages: List[ChatMessage] = []
        self.is_typing = False
        self.session = 0
        self.reset()

    def reset(self):
        self.session += 1
        self.messages = []
        self.is_typing = False
        if self.greeting:
            self.append("system", self.greeting)

    def append(self, role: str, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self.messages.append(message)
        return message

    def visible_messages(self) -> List[ChatMessage]:
        return [message for message in self.messages if message.role != "system"]

    def history(self) -> List[dict]:
        return [message.model_dump() for message in self.messages]

    async def send(self, text: Optional[str], engine) -> Optional[ChatMessage]:
        content = (text or "").strip()
        if not content or engine is None:
            return None

        self.append("user", content)
        history = self.history()
        session = self.session
        self.is_typing = True
        try:
            try:
                reply = await engine.create_chat_completion(history)
                response = reply["choices"][0]["message"]["content"]
                if not isinstance(response, str):
                    raise TypeError(f"reply content is {type(response).__name__}, not str")
                print(f"Assistant ({reply.get('model') or 'engine'}): {len(response)} chars")
            except Exception as exc:
                print(f"Chat completion failed: {exc}")
                response = ERROR_MESSAGE
        finally:
            if session == self.session:
                self.is_typing = False

        if session != self.session:
            print("Dropped a reply for a conversation that was reset.")
            return None
        return self.append("assistant", response)
