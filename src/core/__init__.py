# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бизнес-логика документов водителей и подписок; инфраструктура
передаётся в сервисы через порты (репозитории, хранилище, платежи).
"""
