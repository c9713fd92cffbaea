"""
Conversation state and request payload assembly.

Page content arrives already extracted and converted to markdown; this
module only turns it into a system message and keeps the turn history.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

CONVERSATION_MAX_AGE_SECONDS = 60 * 60

SYSTEM_PROMPT_TEMPLATE = """You are an intelligent AI avatar assistant that helps users understand and analyze webpage content. You have access to the following webpage content:

**Page Title:** {title}
**URL:** {url}
**Content Type:** {content_type}
**Word Count:** {word_count}

**Page Content (in Markdown format):**
{content}

**Your Role:**
- Help users understand and analyze this webpage content
- Answer questions about the content accurately and helpfully
- Provide summaries, explanations, and insights
- Be concise but thorough in your responses
- If asked about information not in the content, clearly state that

**Conversation Style:**
- Be friendly, helpful, and engaging
- Use a conversational tone appropriate for the content type
- Provide specific examples and quotes from the content when relevant"""


@dataclass(frozen=True)
class PageContext:
    """Extracted page the conversation is about."""
    title: str = ""
    url: str = ""
    content_type: str = "article"
    word_count: int = 0
    content: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageContext":
        return cls(
            title=str(data.get("title", "")),
            url=str(data.get("url", "")),
            content_type=str(data.get("content_type", data.get("contentType", "article"))),
            word_count=int(data.get("word_count", data.get("wordCount", 0)) or 0),
            content=str(data.get("content", "")),
        )

    def system_message(self) -> Dict[str, str]:
        return {
            "role": "system",
            "content": SYSTEM_PROMPT_TEMPLATE.format(
                title=self.title,
                url=self.url,
                content_type=self.content_type,
                word_count=self.word_count,
                content=self.content,
            ),
        }


@dataclass
class Conversation:
    messages: List[Dict[str, str]] = field(default_factory=list)
    context: Optional[PageContext] = None
    started_at: float = field(default_factory=time.time)


class ConversationBook:
    """Conversations keyed by id (one per tab or window)."""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}

    def build_messages(
        self,
        conversation_id: str,
        user_message: str,
        context: Optional[PageContext] = None,
    ) -> List[Dict[str, str]]:
        """Append the user turn and return the message list to send.

        New page context restarts the history with a fresh system message.
        """
        conversation = self._conversations.setdefault(conversation_id, Conversation())
        if context is not None:
            conversation.context = context
            conversation.messages = [context.system_message()]
        conversation.messages.append({"role": "user", "content": user_message})
        return list(conversation.messages)

    def add_reply(self, conversation_id: str, text: str) -> int:
        """Record the assistant turn. Returns the conversation length."""
        conversation = self._conversations.setdefault(conversation_id, Conversation())
        conversation.messages.append({"role": "assistant", "content": text})
        return len(conversation.messages)

    def summary(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return {
            "message_count": len(conversation.messages),
            "has_page_content": conversation.context is not None,
            "started_at": conversation.started_at,
        }

    def clear(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    def prune(self, max_age: float = CONVERSATION_MAX_AGE_SECONDS, now: Optional[float] = None) -> int:
        """Drop conversations started more than ``max_age`` seconds ago."""
        cutoff = (now if now is not None else time.time()) - max_age
        stale = [cid for cid, c in self._conversations.items() if c.started_at < cutoff]
        for cid in stale:
            del self._conversations[cid]
        return len(stale)
