"""
DID Inventory & Billing Reconciliation Engine
=============================================

Core modules for provisioning telephone numbers (DIDs) to customer
accounts and keeping them reconciled with the external billing system.

This package provides:
- Inventory lifecycle (reservation, assignment, suspension, release)
- Renewal scheduling for per-DID and consolidated billing modes
- Invoice synchronization with bounded, durable retry
- Payment reconciliation of paid and overdue invoices
- Reservation expiry sweeps
"""

__version__ = "1.0.0"
