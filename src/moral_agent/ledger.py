# ledger.py
# Economic ledger: the single admission-control gate for new cycles.
#
# Balance is always recomputed from the three running totals, never
# decremented in place. The JSON file is the source of truth and is
# replaced atomically after every mutation (last writer wins).

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from moral_agent.models import EnergyLedger, EnergyTransaction, TokenUsage, utc_now

logger = logging.getLogger(__name__)

LEDGER_PATH = "/income/balance.json"
MAX_TRANSACTIONS = 100


@dataclass(frozen=True)
class ModelRate:
    """USD per million tokens."""

    input: float
    output: float


MODEL_RATES: dict[str, ModelRate] = {
    "opus": ModelRate(input=5.00, output=25.00),
    "haiku": ModelRate(input=0.80, output=4.00),
}

DEFAULT_MODEL_CLASS = "opus"


def calculate_cost(usage: TokenUsage, model_class: str = DEFAULT_MODEL_CLASS, rates: dict[str, ModelRate] | None = None) -> float:
    table = rates or MODEL_RATES
    rate = table.get(model_class) or table[DEFAULT_MODEL_CLASS]
    return (usage.input_tokens / 1_000_000) * rate.input + (usage.output_tokens / 1_000_000) * rate.output


class EconomicLedger:
    """
    Tracks remaining budget and every costed operation.

    Delegated sub-tasks record usage from worker threads, so mutation and
    persistence happen under an in-process lock. There is no lock file:
    external readers (the dashboard) see best-effort snapshots.
    """

    def __init__(
        self,
        path: Path,
        state: EnergyLedger,
        rates: dict[str, ModelRate] | None = None,
        max_transactions: int = MAX_TRANSACTIONS,
    ) -> None:
        self._path = path
        self._state = state
        self._rates = rates or MODEL_RATES
        self._max_transactions = max_transactions
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        path: Path,
        initial_budget: float,
        rates: dict[str, ModelRate] | None = None,
        max_transactions: int = MAX_TRANSACTIONS,
    ) -> "EconomicLedger":
        """
        Load the persisted ledger, or create and persist a fresh one on first run.

        An unreadable ledger is never treated as a first run: the damaged
        file is moved aside and the agent starts with zero balance until
        the operator restores or replaces it.
        """
        try:
            state = cls._load(path)
        except (json.JSONDecodeError, ValidationError) as exc:
            kept = cls._set_aside(path)
            logger.error(
                "Ledger is corrupt, starting with zero balance",
                extra={"data": {"error": str(exc), "kept_as": str(kept)}},
            )
            state = EnergyLedger(balance_usd=0.0, initial_budget_usd=initial_budget, total_spent_usd=initial_budget)
            ledger = cls(path, state, rates, max_transactions)
            ledger._save()
            return ledger

        if state is None:
            state = EnergyLedger(balance_usd=initial_budget, initial_budget_usd=initial_budget)
            ledger = cls(path, state, rates, max_transactions)
            ledger._save()
            logger.info("Ledger initialized", extra={"data": {"initial_budget": initial_budget}})
            return ledger
        return cls(path, state, rates, max_transactions)

    @staticmethod
    def _load(path: Path) -> EnergyLedger | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return EnergyLedger.model_validate(json.loads(raw))

    @staticmethod
    def _set_aside(path: Path) -> Path:
        kept = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
        os.replace(path, kept)
        return kept

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def record_usage(self, cycle: int, usage: TokenUsage, model_class: str = DEFAULT_MODEL_CLASS, kind: str = "api_call") -> float:
        """Charge one costed operation and persist. Returns its cost in USD."""
        cost = calculate_cost(usage, model_class, self._rates)

        with self._lock:
            state = self._state
            state.total_spent_usd += cost
            state.balance_usd = max(
                0.0, state.initial_budget_usd + state.total_earned_usd - state.total_spent_usd
            )
            state.transactions.append(
                EnergyTransaction(
                    cycle=cycle,
                    timestamp=utc_now(),
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    cost=cost,
                    type=kind,
                )
            )
            if len(state.transactions) > self._max_transactions:
                state.transactions = state.transactions[-self._max_transactions:]
            self._save()
            balance = state.balance_usd

        logger.info(
            "Energy usage recorded",
            extra={
                "data": {
                    "cycle": cycle,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "cost": round(cost, 4),
                    "balance": round(balance, 4),
                }
            },
        )
        return cost

    def get_balance(self) -> float:
        return self._state.balance_usd

    def has_budget(self) -> bool:
        return self._state.balance_usd > 0

    def snapshot(self) -> EnergyLedger:
        with self._lock:
            return self._state.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        # Write-then-rename so a crash mid-write never leaves a truncated ledger.
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(self._state.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            logger.error("Failed to save ledger", extra={"data": {"error": str(exc)}})
