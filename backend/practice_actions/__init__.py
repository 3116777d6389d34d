from .core_actions import PracticeActionset, invoice_number, register_actions

__all__ = ["PracticeActionset", "invoice_number", "register_actions"]
