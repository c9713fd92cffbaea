"""
Quota guard service.

Single entry point for hosts: wires the ledger, admission controller,
stream registry, conversation history and transport together, and exposes
the management operations (stats, limits, reset, export/import).
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..config.loader import Settings
from ..core.admission import AdmissionController, AdmissionDecision
from ..core.conversation import ConversationBook, PageContext
from ..core.coordinator import CompletionResult, StreamEvent, StreamListener, StreamingCoordinator
from ..core.ledger import PERIODS, UsageLedger, utc_now
from ..core.policy import QuotaPolicy
from ..core.pricing import PricingTable
from ..core.session import StreamRegistry
from ..storage.repository import MemoryKeyValueStore
from .openai_client import OpenAITransport

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
POLICY_STORAGE_KEY = "quota_policy"


class QuotaGuardService:
    """Quota-governed completion service.

    Call ``start()`` once before use so persisted usage and limits are
    loaded, and ``aclose()`` on shutdown.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store=None,
        transport=None,
        clock: Callable[[], datetime] = utc_now,
        listener: Optional[StreamListener] = None,
    ):
        """
        Args:
            settings: Application settings; defaults when omitted
            store: Async key/value store; in-memory when omitted
            transport: Completion transport; built from settings when omitted
            clock: Returns the current aware datetime
            listener: Default receiver of stream events
        """
        self.settings = settings or Settings()
        self.store = store if store is not None else MemoryKeyValueStore()
        self.policy: QuotaPolicy = self.settings.quota
        self.pricing: PricingTable = self.settings.pricing

        if transport is None:
            transport_settings = self.settings.transport
            api_key = transport_settings.api_key()
            if not api_key:
                # the client is built on first request, which then fails as auth
                logger.warning("API key not set in $%s", transport_settings.api_key_env)
            transport = OpenAITransport(
                model=self.settings.model,
                api_key=api_key or "",
                base_url=transport_settings.base_url,
                timeout=transport_settings.timeout,
                max_tokens=transport_settings.max_tokens,
                temperature=transport_settings.temperature,
                presence_penalty=transport_settings.presence_penalty,
                frequency_penalty=transport_settings.frequency_penalty,
            )
        self.transport = transport

        self.ledger = UsageLedger(store=self.store, pricing=self.pricing, clock=clock)
        self.admission = AdmissionController(
            self.ledger,
            policy_provider=lambda: self.policy,
            pricing_provider=lambda: self.pricing,
        )
        self.registry = StreamRegistry()
        self.conversations = ConversationBook()
        self.coordinator = StreamingCoordinator(
            transport=self.transport,
            ledger=self.ledger,
            admission=self.admission,
            registry=self.registry,
            conversations=self.conversations,
            model=self.settings.model,
            estimated_completion_tokens=self.settings.transport.estimated_completion_tokens,
            idle_timeout=self.settings.transport.idle_timeout,
            listener=listener,
        )

    async def start(self) -> None:
        """Load persisted usage and any saved quota policy."""
        await self.ledger.load()
        try:
            saved = await self.store.get(POLICY_STORAGE_KEY)
        except Exception:
            logger.warning("Could not read saved quota policy", exc_info=True)
            return
        if saved:
            try:
                self.policy = self.settings.quota.merged(saved)
            except ValueError as e:
                logger.warning("Ignoring invalid saved quota policy: %s", e)
        logger.info("Quota guard started on %s", self.settings.model)

    async def check_admission(
        self, prompt_text: str, model: Optional[str] = None, estimated_completion_tokens: Optional[int] = None
    ) -> AdmissionDecision:
        return await self.coordinator.check_admission(
            model or self.settings.model, prompt_text, estimated_completion_tokens
        )

    async def generate(
        self,
        conversation_id: str,
        user_message: str,
        page_context: Union[PageContext, Dict[str, Any], None] = None,
        streaming: bool = False,
        listener: Optional[StreamListener] = None,
    ) -> Union[CompletionResult, str]:
        """Run a completion for a conversation.

        Args:
            conversation_id: Owner of the conversation (a tab or window)
            user_message: The user's turn
            page_context: Page content; restarts the conversation when given
            streaming: Start a background stream instead of waiting
            listener: Receiver of stream events when streaming

        Returns:
            CompletionResult, or the stream id when ``streaming`` is True
        """
        self.conversations.prune()
        return await self.coordinator.generate(
            conversation_id, user_message, _page_context(page_context), streaming, listener
        )

    async def start_stream(
        self,
        conversation_id: str,
        user_message: str,
        page_context: Union[PageContext, Dict[str, Any], None] = None,
        listener: Optional[StreamListener] = None,
    ) -> str:
        self.conversations.prune()
        return await self.coordinator.start_stream(
            conversation_id, user_message, _page_context(page_context), listener
        )

    async def run_stream(
        self,
        conversation_id: str,
        user_message: str,
        page_context: Union[PageContext, Dict[str, Any], None] = None,
        listener: Optional[StreamListener] = None,
    ) -> StreamEvent:
        self.conversations.prune()
        return await self.coordinator.run_stream(
            conversation_id, user_message, _page_context(page_context), listener
        )

    async def wait_stream(self, stream_id: str) -> Optional[StreamEvent]:
        return await self.coordinator.wait_stream(stream_id)

    def cancel_stream(self, stream_id: str) -> bool:
        return self.coordinator.cancel_stream(stream_id)

    def cancel_owner(self, owner_id: str) -> int:
        return self.registry.cancel_owner(owner_id)

    def active_streams(self) -> List[Dict[str, Any]]:
        return self.registry.active_streams()

    def conversation_summary(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self.conversations.summary(conversation_id)

    def clear_conversation(self, conversation_id: str) -> None:
        self.conversations.clear(conversation_id)

    async def get_usage_stats(self) -> Dict[str, Any]:
        """Usage, limits and percentages for every period."""
        stats = {}
        for period in PERIODS:
            period_stats = await self.ledger.get_stats(period, self.policy)
            stats[period] = period_stats.to_dict()
        stats["current_minute_requests"] = await self.ledger.current_minute_requests()
        return stats

    async def update_quota_policy(self, partial: Dict[str, Any]) -> bool:
        """Apply a partial limits update and persist it.

        An invalid update is logged and the current policy is kept.

        Returns:
            True if the update was applied
        """
        try:
            policy = self.policy.merged(partial)
        except ValueError as e:
            logger.warning("Rejected quota policy update: %s", e)
            return False

        self.policy = policy
        try:
            await self.store.set(POLICY_STORAGE_KEY, policy.to_dict())
        except Exception:
            logger.warning("Failed to persist quota policy", exc_info=True)
        logger.info("Quota policy updated")
        return True

    async def reset_usage(self, period: str) -> None:
        await self.ledger.reset_usage(period)
        logger.info("Reset %s usage", period)

    def reload_pricing(self, pricing: PricingTable) -> None:
        """Swap in a new pricing table; in-flight admission keeps the old one."""
        self.pricing = pricing
        self.ledger.pricing = pricing
        self.settings = replace(self.settings, pricing=pricing)

    async def export_data(self) -> Dict[str, Any]:
        """Usage, limits and pricing as one JSON-ready document."""
        async with self.ledger.transaction() as ledger:
            usage = ledger.to_snapshot()
        return {
            "usage": usage,
            "limits": self.policy.to_dict(),
            "models": self.pricing.to_dict(),
            "export_date": self.ledger.now().isoformat(),
            "version": EXPORT_VERSION,
        }

    async def import_data(self, data: Dict[str, Any]) -> None:
        """Restore a document produced by ``export_data``.

        Usage is replaced; limits are applied when present. Pricing is not
        imported since it comes from configuration.

        Raises:
            ValueError: If the document is invalid
        """
        if not isinstance(data, dict) or "usage" not in data:
            raise ValueError("Invalid import data: missing 'usage'")

        policy = None
        if data.get("limits") is not None:
            policy = QuotaPolicy.from_dict(data["limits"])

        await self.ledger.import_snapshot(data["usage"])
        if policy is not None:
            self.policy = policy
            await self.store.set(POLICY_STORAGE_KEY, policy.to_dict())
        logger.info("Imported usage data (version %s)", data.get("version", "unknown"))

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()


def _page_context(value: Union[PageContext, Dict[str, Any], None]) -> Optional[PageContext]:
    if value is None or isinstance(value, PageContext):
        return value
    return PageContext.from_dict(value)
