"""Payroll tax and benefit calculation engine."""

__version__ = "1.0.0"
