"""Rounding and deterministic hashing for composed payroll lines."""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Iterable
from uuid import UUID


class LineItemBuilder:
    """Rounding rules and fingerprints shared by the calculators.

    Rounding:
    - Internal compute at 4 decimals
    - Currency outputs to 2 decimals, banker's rounding (ROUND_HALF_EVEN)

    Fingerprints are sha256 over canonical JSON (sorted keys), truncated to
    32 hex chars. The calculation id is a UUID over the fingerprints and the
    engine version, so identical inputs and rules always produce the same id.
    """

    PRECISION = Decimal("0.0001")  # 4 decimal places for internal calculations
    OUTPUT_PRECISION = Decimal("0.01")  # 2 decimal places for persistence

    @staticmethod
    def round_internal(amount: Decimal) -> Decimal:
        return amount.quantize(LineItemBuilder.PRECISION, rounding=ROUND_HALF_EVEN)

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_EVEN)

    @staticmethod
    def _digest(payload: Any) -> str:
        json_str = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    @staticmethod
    def compute_line_hash(canonical: dict[str, Any]) -> str:
        """Compute deterministic hash for a canonical line dict."""
        return LineItemBuilder._digest(canonical)

    @staticmethod
    def compute_inputs_fingerprint(inputs_data: list[dict[str, Any]]) -> str:
        """Compute fingerprint of all inputs used in calculation."""
        return LineItemBuilder._digest(inputs_data)

    @staticmethod
    def compute_rules_fingerprint(rule_ids: Iterable[UUID | str]) -> str:
        """Compute fingerprint of all rules used in calculation."""
        return LineItemBuilder._digest(sorted(str(r) for r in rule_ids))

    @staticmethod
    def generate_calculation_id(
        run_id: UUID,
        employee_id: UUID,
        period_date: date,
        engine_version: str,
        inputs_fingerprint: str,
        rules_fingerprint: str,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "run_id": str(run_id),
            "employee_id": str(employee_id),
            "period_date": str(period_date),
            "engine_version": engine_version,
            "inputs_fingerprint": inputs_fingerprint,
            "rules_fingerprint": rules_fingerprint,
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])
