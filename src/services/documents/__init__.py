# src/services/documents/__init__.py
"""
Documents Service: загрузка и проверка документов водителей.
"""
