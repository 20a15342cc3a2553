"""CRUD 操作模块"""
from . import notification, order, payment

__all__ = ["notification", "order", "payment"]
