"""
Merchant Repository for the assistant's read side of the merchant dataset.

The dashboard owns merchant records; this repository holds the current list in
memory, hands out immutable snapshots for each conversational turn and
notifies subscribers (e.g. the aggregation query cache) when the data changes.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from mall_assistant.core.models import Merchant
from mall_assistant.repositories.sample_data import SAMPLE_MERCHANTS

logger = logging.getLogger(__name__)

MerchantSnapshot = Tuple[Merchant, ...]
ChangeListener = Callable[[MerchantSnapshot], None]


def _coerce(record: Union[Merchant, Dict[str, Any]]) -> Merchant:
    if isinstance(record, Merchant):
        return record
    return Merchant.model_validate(record)


class MerchantRepository:
    """
    In-memory merchant store with a change-notification hook.

    Records are pydantic models with frozen=True, so a snapshot tuple can be
    shared across pipeline stages without copying.
    """

    def __init__(self, merchants: Optional[Iterable[Union[Merchant, Dict[str, Any]]]] = None):
        """
        Initialize the repository.

        Args:
            merchants: Initial records (models or camelCase dicts).
                If None, the bundled sample merchants are loaded.
        """
        source = SAMPLE_MERCHANTS if merchants is None else merchants
        self._merchants: List[Merchant] = [_coerce(m) for m in source]
        self._listeners: List[ChangeListener] = []
        logger.info(f"🏬 Initialized MerchantRepository with {len(self._merchants)} merchants")

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_all_merchants(self) -> List[Merchant]:
        """Return a new list of all merchants in registry order."""
        return list(self._merchants)

    def snapshot(self) -> MerchantSnapshot:
        """Return an immutable view of the dataset for one conversational turn."""
        return tuple(self._merchants)

    def get_by_id(self, merchant_id: str) -> Optional[Merchant]:
        for merchant in self._merchants:
            if merchant.id == merchant_id:
                return merchant
        return None

    def __len__(self) -> int:
        return len(self._merchants)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a callback invoked with the new snapshot after each write.

        Args:
            listener: Callable taking the new snapshot

        Returns:
            A function that removes the listener when called

        Example:
            >>> repo = MerchantRepository([])
            >>> unsubscribe = repo.subscribe(lambda snap: print(len(snap)))
            >>> unsubscribe()
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    # ------------------------------------------------------------------
    # Write side (used by the dashboard, never by the query core)
    # ------------------------------------------------------------------

    def replace_all(self, merchants: Iterable[Union[Merchant, Dict[str, Any]]]) -> None:
        """Replace the whole dataset and notify subscribers."""
        self._merchants = [_coerce(m) for m in merchants]
        logger.info(f"🔄 Merchant dataset replaced ({len(self._merchants)} records)")
        self._notify()

    def upsert(self, merchant: Union[Merchant, Dict[str, Any]]) -> Merchant:
        """
        Insert a merchant or replace the record with the same id.

        Returns:
            The stored Merchant model
        """
        record = _coerce(merchant)
        for index, existing in enumerate(self._merchants):
            if existing.id == record.id:
                self._merchants[index] = record
                logger.info(f"✏️ Updated merchant {record.id}")
                break
        else:
            self._merchants.append(record)
            logger.info(f"➕ Added merchant {record.id}")
        self._notify()
        return record


_repository: Optional[MerchantRepository] = None


def get_merchant_repository() -> MerchantRepository:
    """
    Factory function returning the process-wide repository instance.

    Returns:
        MerchantRepository loaded with the bundled sample merchants
    """
    global _repository
    if _repository is None:
        _repository = MerchantRepository()
    return _repository
