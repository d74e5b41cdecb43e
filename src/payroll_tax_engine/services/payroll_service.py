"""Payroll service - batch orchestrator for preview and commit runs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payroll_tax_engine.calculators.allowance_ledger import AllowanceLedger
from payroll_tax_engine.calculators.composer import PayrollLineComposer
from payroll_tax_engine.calculators.rule_resolver import RuleResolver
from payroll_tax_engine.calculators.types import (
    ZERO,
    EmployeeFailure,
    EmployeePayrollInput,
    PayrollRunInput,
    PayslipLine,
    ReferenceData,
)
from payroll_tax_engine.config import Settings, get_settings
from payroll_tax_engine.errors import (
    LedgerContentionError,
    PayrollLineError,
    PayrollRunHaltedError,
)
from payroll_tax_engine.services.commit_service import PayrollCommitService
from payroll_tax_engine.services.ledger_service import AllowanceLedgerService
from payroll_tax_engine.services.reference_data import ReferenceDataRepository
from payroll_tax_engine.services.sources import PayrollRunSource

logger = logging.getLogger(__name__)


class CancellationToken:
    """Run-level cancellation flag shared by every employee task."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PayrollRunResult:
    """Outcome of a preview or commit run.

    Lines and failures are ordered as the employees appear in the run input.
    """

    organization_id: UUID
    run_id: UUID
    period_date: date
    committed: bool
    lines: list[PayslipLine] = field(default_factory=list)
    failures: list[EmployeeFailure] = field(default_factory=list)
    cancelled_employee_ids: list[UUID] = field(default_factory=list)
    already_committed_employee_ids: list[UUID] = field(default_factory=list)

    @property
    def was_cancelled(self) -> bool:
        return bool(self.cancelled_employee_ids)

    @property
    def total_gross(self) -> Decimal:
        return sum((line.gross_pay for line in self.lines), ZERO)

    @property
    def total_tax(self) -> Decimal:
        return sum((line.total_tax for line in self.lines), ZERO)

    @property
    def total_net(self) -> Decimal:
        return sum((line.net_pay for line in self.lines), ZERO)


# Per-employee outcomes
_LINE = "line"
_FAILED = "failed"
_CANCELLED = "cancelled"
_ALREADY_COMMITTED = "already_committed"


class PayrollService:
    """Service for running payroll batches.

    Operations:
    - preview_payroll: Compose every employee's line; no persistent side effects
    - commit_payroll: Compose against locked usage rows and persist usage
      deltas plus a commit record, one transaction per employee

    Key invariants:
    1. Reference data is loaded once per batch and shared read-only
    2. At most ``max_concurrency`` employees are composed at once
    3. Reference data defects halt the whole run (PayrollRunHaltedError); any
       other unexpected error stops it too and is re-raised once every
       started employee has finished
    4. Employee input errors fail only that employee
    5. Commit is idempotent per (employee, run, period); a re-run only
       processes uncommitted employees
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: PayrollRunSource,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.source = source
        self.settings = settings or get_settings()

    async def preview_payroll(
        self,
        organization_id: UUID,
        run_id: UUID,
        period_date: date,
        cancel_token: CancellationToken | None = None,
    ) -> PayrollRunResult:
        """Compute all lines without touching AllowanceUsage.

        Raises:
            PayrollRunHaltedError: If reference data is defective
        """
        run = await self.source.load_run(organization_id, run_id, period_date)
        async with self.session_factory() as session:
            reference = await ReferenceDataRepository(session).load(organization_id)
            usage = await AllowanceLedgerService(session).load_usage(
                (e.employee_id for e in run.employees), period_date.year
            )

        resolver = RuleResolver(reference)
        ledger = AllowanceLedger(resolver, usage, self.settings.near_cap_threshold_percent)
        composer = PayrollLineComposer(
            resolver, ledger, engine_version=self.settings.engine_version
        )

        async def preview_employee(employee: EmployeePayrollInput) -> tuple[str, PayslipLine]:
            line = await asyncio.to_thread(
                composer.compose,
                run.organization_id,
                run.run_id,
                run.period_date,
                run.pay_frequency,
                employee,
            )
            return _LINE, line

        result = await self._run_batch(run, preview_employee, cancel_token, committed=False)
        logger.info(
            "Previewed payroll run %s: %d lines, %d failures, gross %s, net %s",
            run_id,
            len(result.lines),
            len(result.failures),
            result.total_gross,
            result.total_net,
        )
        return result

    async def commit_payroll(
        self,
        organization_id: UUID,
        run_id: UUID,
        period_date: date,
        cancel_token: CancellationToken | None = None,
    ) -> PayrollRunResult:
        """Compose and persist every uncommitted employee.

        Each employee commits in its own transaction: usage rows are locked,
        the line is recomposed against them, usage deltas and the commit
        record are written together. A lost race on a usage row is retried
        against fresh state.

        Raises:
            PayrollRunHaltedError: If reference data is defective
            LedgerContentionError: If an employee keeps losing usage races
        """
        run = await self.source.load_run(organization_id, run_id, period_date)
        async with self.session_factory() as session:
            reference = await ReferenceDataRepository(session).load(organization_id)
            committed_ids = await PayrollCommitService(session).committed_employee_ids(
                run_id, period_date
            )

        async def commit_employee(employee: EmployeePayrollInput) -> tuple[str, PayslipLine | None]:
            if employee.employee_id in committed_ids:
                return _ALREADY_COMMITTED, None
            return await self._commit_employee(run, reference, employee)

        result = await self._run_batch(run, commit_employee, cancel_token, committed=True)
        logger.info(
            "Committed payroll run %s: %d committed, %d already committed, "
            "%d failures, %d cancelled",
            run_id,
            len(result.lines),
            len(result.already_committed_employee_ids),
            len(result.failures),
            len(result.cancelled_employee_ids),
        )
        return result

    async def _commit_employee(
        self,
        run: PayrollRunInput,
        reference: ReferenceData,
        employee: EmployeePayrollInput,
    ) -> tuple[str, PayslipLine | None]:
        resolver = RuleResolver(reference)
        attempts = max(self.settings.commit_retry_attempts, 1)
        year = run.period_date.year

        for attempt in range(1, attempts + 1):
            try:
                async with self.session_factory() as session, session.begin():
                    commits = PayrollCommitService(session)
                    existing = await commits.get_commit(
                        employee.employee_id, run.run_id, run.period_date
                    )
                    if existing is not None:
                        return _ALREADY_COMMITTED, None

                    usage_service = AllowanceLedgerService(session)
                    rows = await usage_service.lock_employee_usage(employee.employee_id, year)
                    usage = {
                        (employee.employee_id, allowance_type, row.year): row.to_state()
                        for allowance_type, row in rows.items()
                    }
                    ledger = AllowanceLedger(
                        resolver, usage, self.settings.near_cap_threshold_percent
                    )
                    composer = PayrollLineComposer(
                        resolver, ledger, engine_version=self.settings.engine_version
                    )
                    line = await asyncio.to_thread(
                        composer.compose,
                        run.organization_id,
                        run.run_id,
                        run.period_date,
                        run.pay_frequency,
                        employee,
                    )
                    await usage_service.apply_line(line, rows)
                    await commits.record_commit(
                        run.organization_id, line, self.settings.engine_version
                    )
                return _LINE, line
            except (StaleDataError, IntegrityError) as e:
                logger.warning(
                    "Usage contention for employee %s (attempt %d/%d): %s",
                    employee.employee_id,
                    attempt,
                    attempts,
                    e,
                )
        raise LedgerContentionError(employee.employee_id, attempts)

    async def _run_batch(
        self,
        run: PayrollRunInput,
        worker: Callable[[EmployeePayrollInput], Awaitable[tuple[str, PayslipLine | None]]],
        cancel_token: CancellationToken | None,
        committed: bool,
    ) -> PayrollRunResult:
        token = cancel_token or CancellationToken()
        semaphore = asyncio.Semaphore(max(self.settings.max_concurrency, 1))
        # First error that stops the run; employees not yet started are skipped
        aborted: list[Exception] = []

        async def guarded(employee: EmployeePayrollInput) -> tuple[str, object]:
            async with semaphore:
                if token.cancelled or aborted:
                    return _CANCELLED, None
                try:
                    return await worker(employee)
                except PayrollLineError as e:
                    if e.halts_run:
                        logger.error("Payroll run %s halted: %s", run.run_id, e)
                        aborted.append(PayrollRunHaltedError(run.run_id, e.cause))
                        return _CANCELLED, None
                    logger.warning("Employee %s failed: %s", employee.employee_id, e)
                    return _FAILED, EmployeeFailure(
                        employee_id=employee.employee_id,
                        step=e.step,
                        code=e.cause_code,
                        message=str(e.cause),
                        component_code=e.component_code,
                    )
                except Exception as e:
                    logger.error(
                        "Payroll run %s stopped at employee %s: %r",
                        run.run_id,
                        employee.employee_id,
                        e,
                    )
                    aborted.append(e)
                    return _CANCELLED, None

        outcomes = await asyncio.gather(*(guarded(e) for e in run.employees))
        if aborted:
            raise aborted[0]

        result = PayrollRunResult(
            organization_id=run.organization_id,
            run_id=run.run_id,
            period_date=run.period_date,
            committed=committed,
        )
        for employee, (kind, value) in zip(run.employees, outcomes):
            if kind == _LINE:
                result.lines.append(value)
            elif kind == _FAILED:
                result.failures.append(value)
            elif kind == _ALREADY_COMMITTED:
                result.already_committed_employee_ids.append(employee.employee_id)
            else:
                result.cancelled_employee_ids.append(employee.employee_id)
        return result
