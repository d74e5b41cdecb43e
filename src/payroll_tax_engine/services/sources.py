"""Run input collaborators: where employees, variables and assignments come from."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping, Protocol
from uuid import NAMESPACE_URL, UUID, uuid5

from payroll_tax_engine.calculators.types import (
    ComponentAssignment,
    ComponentSelectionMode,
    EmployeePayrollInput,
    PayComponentDefinition,
    PayrollRunInput,
)
from payroll_tax_engine.schemas import PayComponentCreate, PayrollRunPayload

logger = logging.getLogger(__name__)


class PayrollRunNotFoundError(LookupError):
    """Raised when a source has no run for the requested key."""

    def __init__(self, organization_id: UUID, run_id: UUID, period_date: date):
        self.organization_id = organization_id
        self.run_id = run_id
        self.period_date = period_date
        super().__init__(f"Payroll run {run_id} for {period_date} not found")


class PayrollRunSource(Protocol):
    """Supplies the employees, variables and assignments of a run."""

    async def load_run(
        self, organization_id: UUID, run_id: UUID, period_date: date
    ) -> PayrollRunInput: ...


@dataclass(frozen=True)
class RunTypeDefinition:
    """Component selection rules of a run type.

    - template: the template's components
    - explicit: only allowed_component_codes
    - hybrid: template components plus allowed_component_codes
    Excluded codes are removed in every mode.
    """

    type_code: str
    selection_mode: ComponentSelectionMode = ComponentSelectionMode.HYBRID
    template_component_codes: tuple[str, ...] = ()
    allowed_component_codes: tuple[str, ...] = ()
    excluded_component_codes: tuple[str, ...] = field(default_factory=tuple)

    def resolve_allowed_components(self) -> list[str]:
        if self.selection_mode == ComponentSelectionMode.TEMPLATE:
            codes = list(self.template_component_codes)
        elif self.selection_mode == ComponentSelectionMode.EXPLICIT:
            codes = list(self.allowed_component_codes)
        else:
            codes = list(self.template_component_codes) + [
                c for c in self.allowed_component_codes if c not in self.template_component_codes
            ]
        excluded = set(self.excluded_component_codes)
        return [c for c in codes if c not in excluded]


def select_assignments(
    assignments: Iterable[ComponentAssignment], allowed_codes: Iterable[str] | None
) -> tuple[ComponentAssignment, ...]:
    """Keep assignments whose component the run type allows (None = all)."""
    if allowed_codes is None:
        return tuple(assignments)
    allowed = set(allowed_codes)
    return tuple(a for a in assignments if a.component.code in allowed)


def component_from_schema(component_id: UUID, schema: PayComponentCreate) -> PayComponentDefinition:
    return PayComponentDefinition(
        component_id=component_id,
        code=schema.code,
        name=schema.name,
        component_type=schema.component_type,
        category=schema.category,
        calculation_type=schema.calculation_type,
        default_amount=schema.default_amount,
        formula=schema.formula,
        percentage_rate=schema.percentage_rate,
        is_taxable=schema.is_taxable,
        is_recurring=schema.is_recurring,
        is_system_component=schema.is_system_component,
        metadata=dict(schema.metadata),
    )


def run_input_from_payload(
    payload: PayrollRunPayload | Mapping[str, Any],
    component_ids: Mapping[str, UUID] | None = None,
) -> PayrollRunInput:
    """Build a run input from a collaborator payload.

    Assignments referencing codes outside the catalogue are rejected;
    assignments outside the run type's allowed components are dropped.
    """
    if not isinstance(payload, PayrollRunPayload):
        payload = PayrollRunPayload.model_validate(payload)

    ids = dict(component_ids or {})
    catalogue = {
        c.code: component_from_schema(
            ids.get(c.code) or uuid5(NAMESPACE_URL, f"{payload.organization_id}/{c.code}"), c
        )
        for c in payload.components
    }
    run_type = RunTypeDefinition(
        type_code=payload.run_type,
        selection_mode=payload.selection_mode,
        template_component_codes=tuple(payload.template_component_codes),
        allowed_component_codes=tuple(payload.allowed_component_codes),
        excluded_component_codes=tuple(payload.excluded_component_codes),
    )
    allowed: list[str] | None = None
    if payload.template_component_codes or payload.allowed_component_codes:
        allowed = run_type.resolve_allowed_components()
    elif payload.excluded_component_codes:
        # No selection lists: the whole catalogue less the exclusions
        excluded = set(payload.excluded_component_codes)
        allowed = [code for code in catalogue if code not in excluded]

    employees: list[EmployeePayrollInput] = []
    for employee in payload.employees:
        assignments = []
        for a in employee.assignments:
            if a.component_code not in catalogue:
                raise ValueError(
                    f"Employee {employee.employee_id} assigned unknown component {a.component_code}"
                )
            assignments.append(
                ComponentAssignment(
                    component=catalogue[a.component_code],
                    configuration=dict(a.configuration),
                    amount_override=a.amount_override,
                    effective_from=a.effective_from,
                    effective_to=a.effective_to,
                )
            )
        employees.append(
            EmployeePayrollInput(
                employee_id=employee.employee_id,
                assignments=select_assignments(assignments, allowed),
                variables=dict(employee.variables),
                residence_status=employee.residence_status,
                employee_number=employee.employee_number,
            )
        )

    return PayrollRunInput(
        organization_id=payload.organization_id,
        run_id=payload.run_id,
        period_date=payload.period_date,
        pay_frequency=payload.pay_frequency,
        employees=tuple(employees),
        run_type=payload.run_type,
    )


class StaticPayrollRunSource:
    """In-memory run source (tests, scripts and embedding callers)."""

    def __init__(self, runs: Iterable[PayrollRunInput] = ()):
        self._runs: dict[tuple[UUID, UUID, date], PayrollRunInput] = {}
        for run in runs:
            self.add(run)

    def add(self, run: PayrollRunInput) -> None:
        self._runs[(run.organization_id, run.run_id, run.period_date)] = run

    def add_payload(self, payload: PayrollRunPayload | Mapping[str, Any]) -> PayrollRunInput:
        run = run_input_from_payload(payload)
        self.add(run)
        return run

    async def load_run(
        self, organization_id: UUID, run_id: UUID, period_date: date
    ) -> PayrollRunInput:
        try:
            return self._runs[(organization_id, run_id, period_date)]
        except KeyError:
            raise PayrollRunNotFoundError(organization_id, run_id, period_date) from None
