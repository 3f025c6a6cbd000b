"""
Full-text message search through the search RPC.
"""

from typing import List, Optional

from infrastructure.config.settings import MessagingConfig, get_config
from infrastructure.external.backend_client import get_backend_client
from infrastructure.external.backend_errors import BackendError
from infrastructure.monitoring.logging_service import get_logger
from services.chat_service.models import SearchResult


class MessageSearch:
    """Search messages the user can read, optionally within one chat"""

    def __init__(self, backend=None, config: Optional[MessagingConfig] = None):
        self.logger = get_logger(__name__)
        self.backend = backend or get_backend_client()
        self.config = config or get_config().messaging
        self.results: List[SearchResult] = []
        self.loading = False

    async def search(self, query: str, chat_id: Optional[str] = None) -> List[SearchResult]:
        if not (query or "").strip():
            self.results = []
            return self.results

        self.loading = True
        try:
            rows = await self.backend.rpc("search_messages", {
                "search_query": query,
                "chat_id_param": chat_id,
                "limit_param": self.config.search_limit,
            })
            self.results = [SearchResult.from_row(row) for row in rows or []]
        except BackendError as e:
            self.logger.error(f"Error searching messages: {e}")
            self.results = []
        finally:
            self.loading = False
        return self.results

    def clear(self):
        self.results = []
