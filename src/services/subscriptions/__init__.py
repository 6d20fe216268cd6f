# src/services/subscriptions/__init__.py
"""
Subscriptions Service: тарифные планы и подписки пассажиров.
"""
