# src/core/drivers/__init__.py
"""
Справочник водителей: сопоставление пользователя и профиля водителя.
"""

from src.core.drivers.repository import DriverDirectory, PostgresDriverDirectory

__all__ = ["DriverDirectory", "PostgresDriverDirectory"]
