from decimal import Decimal


def ok(data=None):
    """Standard success envelope."""
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred", details=None):
    """Standard error envelope."""
    body = {"code": code, "message": message}
    if details is not None:
        body["details"] = details
    return {"ok": False, "data": None, "error": body}


def money(value: Decimal | None) -> str | None:
    """Render a monetary Decimal as a fixed two-decimal string for JSON."""
    if value is None:
        return None
    return f"{Decimal(value):.2f}"
