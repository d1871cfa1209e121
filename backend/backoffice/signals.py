# Overview: In-process notification channel for consumers that cache derived views.
"""
Signals are sent after the data they describe has been committed.

- stock_changed(company_id, product_id, sku_id): a holder's quantity or cost moved
- categorization_applied(company_id, updated, reconciled): a categorization batch finished
- ledger_refreshed(company_id, result): a cash ledger synchronization finished

Receivers connect with e.g. ``ledger_refreshed.connect(handler)``; they must
not raise, since senders do not catch receiver errors.
"""

from blinker import Namespace

_signals = Namespace()

stock_changed = _signals.signal("stock-changed")
categorization_applied = _signals.signal("categorization-applied")
ledger_refreshed = _signals.signal("ledger-refreshed")
