from __future__ import annotations

import importlib
from typing import Callable

Responder = Callable[[str, str], str]

_CARD_COLUMNS = "card, brand, type, payment"
_AMOUNT_COLUMNS = "amount, total, price, fee"


def template_responder(instruction: str, session_id: str) -> str:
    """Keyword-matched analysis templates for local development."""
    text = instruction.lower()
    header = f"Session {session_id}\nInstruction: {instruction.strip()}\n"

    if "count" in text and "mastercard" in text:
        body = (
            "Analysis Type: Mastercard Count Analysis\n"
            f"Column: first column whose name contains one of [{_CARD_COLUMNS}], else 'Card Brand'\n"
            "Rule: count rows whose value contains 'mastercard' or 'master card' (case-insensitive)\n"
            "Output: Total Transactions, Mastercard Transactions, Percentage (1 decimal)\n"
        )
    elif "amount" in text or "total" in text:
        body = (
            "Analysis Type: Amount Analysis\n"
            f"Column: first column whose name contains one of [{_AMOUNT_COLUMNS}], else 'Amount'\n"
            "Rule: strip '$' and ',' then sum positive numeric values\n"
            "Output: Total Amount, Valid Transactions, Average Amount (2 decimals)\n"
        )
    elif "card brand" in text or "payment" in text:
        body = (
            "Analysis Type: Card Brand Distribution\n"
            f"Column: first column whose name contains one of [{_CARD_COLUMNS}], else 'Card Brand'\n"
            "Rule: group rows by trimmed value, missing values count as 'Unknown'\n"
            "Output: Card Brand, Transaction Count, Percentage per brand\n"
        )
    else:
        body = (
            "Analysis Type: Data Summary\n"
            "Output: Total Rows, Total Columns, Columns\n"
        )
    return header + body


def load_responder(spec: str) -> Responder:
    """Resolve ``"package.module:attribute"`` to a responder callable."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Responder must look like 'module:attribute', got {spec!r}")
    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"Responder {spec!r} is not callable")
    return target
