# src/shared/__init__.py
"""
Общий код HTTP сервисов.

Модули:
- models: конверт ответа и общие модели
- http: рендеринг ответов и обработчики ошибок
- auth: идентификация вызывающего по заголовкам шлюза
"""

__all__: list[str] = []
