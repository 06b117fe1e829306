"""
Transaction history file.

Finished transactions are kept as a JSON list, oldest first, so the
history survives between runs of the backend.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Sequence

from utils.atomic_write import atomic_write_json

from .models import Transaction

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Bounded on-disk history of finished transactions.

    Example:
        store = HistoryStore(Path("~/.local/state/nix-software-center/history.json"))
        for tx in store.load():
            print(tx.id, tx.state.value)
    """

    def __init__(self, path: Path, limit: int = 100):
        self.path = Path(path).expanduser()
        self.limit = limit

    def load(self) -> List[Transaction]:
        """
        Read the stored history.

        A missing or unreadable file yields an empty history; unreadable
        entries are skipped.
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable history {self.path}: {e}")
            return []

        if not isinstance(data, list):
            logger.warning(f"Ignoring history {self.path}: top level is not a list")
            return []

        transactions = []
        for item in data:
            try:
                transaction = Transaction.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping history entry: {e}")
                continue
            if transaction.is_terminal:
                transactions.append(transaction)

        transactions.sort(key=lambda t: t.id)
        return transactions[-self.limit:]

    def save(self, transactions: Sequence[Transaction]) -> None:
        """
        Replace the stored history.

        Raises:
            OSError: If the file cannot be written.
        """
        kept = [t for t in transactions if t.is_terminal][-self.limit:]
        atomic_write_json(self.path, [t.to_dict() for t in kept])
        logger.debug(f"Saved {len(kept)} transaction(s) to {self.path}")
