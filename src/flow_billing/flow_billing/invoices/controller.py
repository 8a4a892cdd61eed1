from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import Flask, jsonify, request

from ..common.serialization import to_json
from ..common.session import current_context
from ..container import Container
from ..core.exceptions import ValidationError
from .model import Invoice, InvoicePreview


def _optional_int(value, field_name: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a whole number")


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("paid_at must be an ISO date/time")


def _invoice_json(invoice: Invoice) -> dict:
    data = to_json(invoice)
    data["outstanding_amount"] = str(invoice.outstanding_amount)
    return data


def _preview_json(preview: InvoicePreview) -> dict:
    data = to_json(preview)
    data["has_proration"] = preview.has_proration
    return data


def register(app: Flask, container: Container) -> None:
    invoices = container.invoice_service

    def _body() -> dict:
        return request.get_json(silent=True) or {}

    @app.route("/api/services/<int:service_id>/invoice-preview", methods=["GET"], endpoint="preview_invoice")
    def preview_invoice(service_id: int):
        preview = invoices.preview_invoice(
            context=current_context(),
            service_id=service_id,
            period_start=request.args.get("period_start"),
        )
        return jsonify(_preview_json(preview))

    @app.route("/api/services/<int:service_id>/invoices", methods=["POST"], endpoint="create_invoice")
    def create_invoice(service_id: int):
        data = _body()
        invoice = invoices.create_invoice(
            context=current_context(),
            service_id=service_id,
            period_start=data.get("period_start"),
            invoice_date=data.get("invoice_date"),
            payment_terms_days=_optional_int(data.get("payment_terms_days"), "payment_terms_days"),
            notes=data.get("notes"),
            adjustments=data.get("adjustments") or [],
        )
        return jsonify(_invoice_json(invoice)), 201

    @app.route("/api/invoice-settings", methods=["GET"], endpoint="get_invoice_settings")
    def get_invoice_settings():
        return jsonify(to_json(invoices.get_invoice_settings(context=current_context())))

    @app.route("/api/invoice-settings", methods=["PUT"], endpoint="save_invoice_settings")
    def save_invoice_settings():
        data = _body()
        settings = invoices.save_invoice_settings(
            context=current_context(),
            invoice_prefix=data.get("invoice_prefix"),
            default_payment_terms_days=data.get("default_payment_terms_days"),
            default_currency=data.get("default_currency"),
            default_tax_rate=data.get("default_tax_rate"),
        )
        return jsonify(to_json(settings))

    @app.route("/api/invoices", methods=["GET"], endpoint="list_invoices")
    def list_invoices():
        found = invoices.list_invoices(
            context=current_context(),
            service_id=_optional_int(request.args.get("service_id"), "service_id"),
            stakeholder_id=_optional_int(request.args.get("stakeholder_id"), "stakeholder_id"),
            status=request.args.getlist("status") or None,
        )
        return jsonify({"invoices": [_invoice_json(i) for i in found]})

    @app.route("/api/invoices/summary", methods=["GET"], endpoint="invoice_summary")
    def invoice_summary():
        summary = invoices.invoice_summary(
            context=current_context(),
            service_id=_optional_int(request.args.get("service_id"), "service_id"),
            stakeholder_id=_optional_int(request.args.get("stakeholder_id"), "stakeholder_id"),
        )
        return jsonify(to_json(summary))

    @app.route("/api/invoices/mark-overdue", methods=["POST"], endpoint="mark_overdue_invoices")
    def mark_overdue_invoices():
        marked = invoices.mark_overdue_invoices(context=current_context())
        return jsonify({"invoices": [_invoice_json(i) for i in marked]})

    @app.route("/api/invoices/<int:invoice_id>", methods=["GET"], endpoint="get_invoice")
    def get_invoice(invoice_id: int):
        return jsonify(_invoice_json(invoices.get_invoice(context=current_context(), invoice_id=invoice_id)))

    @app.route("/api/invoices/<int:invoice_id>", methods=["DELETE"], endpoint="delete_draft_invoice")
    def delete_draft_invoice(invoice_id: int):
        invoices.delete_draft_invoice(context=current_context(), invoice_id=invoice_id)
        return "", 204

    @app.route("/api/invoices/<int:invoice_id>/send", methods=["POST"], endpoint="send_invoice")
    def send_invoice(invoice_id: int):
        return jsonify(_invoice_json(invoices.send_invoice(context=current_context(), invoice_id=invoice_id)))

    @app.route("/api/invoices/<int:invoice_id>/cancel", methods=["POST"], endpoint="cancel_invoice")
    def cancel_invoice(invoice_id: int):
        return jsonify(_invoice_json(invoices.cancel_invoice(context=current_context(), invoice_id=invoice_id)))

    @app.route("/api/invoices/<int:invoice_id>/payments", methods=["GET"], endpoint="list_payments")
    def list_payments(invoice_id: int):
        payments = invoices.list_payments(context=current_context(), invoice_id=invoice_id)
        return jsonify({"payments": to_json(payments)})

    @app.route("/api/invoices/<int:invoice_id>/payments", methods=["POST"], endpoint="record_payment")
    def record_payment(invoice_id: int):
        data = _body()
        invoice = invoices.record_payment(
            context=current_context(),
            invoice_id=invoice_id,
            amount=data.get("amount"),
            method=data.get("method", "cash"),
            paid_at=_parse_datetime(data.get("paid_at")),
            reference=data.get("reference"),
        )
        return jsonify(_invoice_json(invoice)), 201

    @app.route("/api/payments/<int:payment_id>/reverse", methods=["POST"], endpoint="reverse_payment")
    def reverse_payment(payment_id: int):
        invoice = invoices.reverse_payment(
            context=current_context(),
            payment_id=payment_id,
            reference=_body().get("reference"),
        )
        return jsonify(_invoice_json(invoice))
