"""
Фоновые воркеры: автоотмена поиска и повтор расчётов.
"""

from src.worker.base import BaseWorker
from src.worker.search_timeout import SearchTimeoutSweeper
from src.worker.settlement import SettlementRetryWorker

__all__ = ["BaseWorker", "SearchTimeoutSweeper", "SettlementRetryWorker"]
