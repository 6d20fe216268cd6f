# src/services/__init__.py
"""
HTTP сервисы платформы.

Каждый сервис это отдельное FastAPI-приложение поверх общего PostgreSQL:
- documents: загрузка документов водителей, ревью, статус верификации
- subscriptions: каталог планов, подписки, сравнение планов
"""

__all__: list[str] = []
