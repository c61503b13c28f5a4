"""HTTP routes over the Marketplace facade."""

from . import dependencies, disputes, payments, work_items

__all__ = ["dependencies", "disputes", "payments", "work_items"]
