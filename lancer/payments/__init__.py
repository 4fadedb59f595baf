"""Payment provider integrations."""

from lancer.payments.beep import BeepPaymentProvider, parse_invoice_status

__all__ = ["BeepPaymentProvider", "parse_invoice_status"]
