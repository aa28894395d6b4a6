"""qqbridge - puppeting bridge between Matrix and QQ."""

__version__ = "0.3.0"
__logo__ = "🐧"
