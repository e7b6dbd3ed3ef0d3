from __future__ import annotations

from lending.models import Edition
from lending.repository import Repository


class InventoryLedger:
    """Moves copies between the available pool and active loans.

    Callers run reserve/release inside the same unit of work as the borrowing
    state change. The repository refuses any adjustment that would leave
    ``0 <= available_quantity <= stock_quantity``.
    """

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    def reserve(self, edition_id: str) -> Edition:
        return self.repository.adjust_edition_availability(edition_id, -1)

    def release(self, edition_id: str) -> Edition:
        return self.repository.adjust_edition_availability(edition_id, +1)
