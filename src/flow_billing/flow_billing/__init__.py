"""Flow stakeholder billing package.

This package is organized by feature modules (billing, services, invoices, ...)
with a thin Flask controller layer and service/repository layers on top of a
generic record store.
"""
