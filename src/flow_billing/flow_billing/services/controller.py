from __future__ import annotations

from flask import Flask, jsonify, request

from ..common.serialization import to_json
from ..common.session import current_context
from ..container import Container


def register(app: Flask, container: Container) -> None:
    catalog = container.service_catalog

    def _body() -> dict:
        return request.get_json(silent=True) or {}

    @app.route("/api/services", methods=["POST"], endpoint="create_service")
    def create_service():
        data = _body()
        service = catalog.create_service(
            context=current_context(),
            stakeholder_id=data.get("stakeholder_id"),
            service_name=data.get("service_name", ""),
            billing_cycle=data.get("billing_cycle", "monthly"),
            billing_day=data.get("billing_day", 1),
            start_date=data.get("start_date"),
            currency=data.get("currency"),
            tax_rate=data.get("tax_rate"),
            end_date=data.get("end_date"),
            line_items=data.get("line_items") or [],
        )
        return jsonify(to_json(service)), 201

    @app.route("/api/stakeholders/<int:stakeholder_id>/services", methods=["GET"], endpoint="list_services")
    def list_services(stakeholder_id: int):
        services = catalog.list_services(context=current_context(), stakeholder_id=stakeholder_id)
        return jsonify({"services": to_json(services)})

    @app.route("/api/services/<int:service_id>", methods=["GET"], endpoint="get_service")
    def get_service(service_id: int):
        return jsonify(to_json(catalog.get_service(context=current_context(), service_id=service_id)))

    @app.route("/api/services/<int:service_id>", methods=["PATCH"], endpoint="update_service")
    def update_service(service_id: int):
        data = _body()
        service = catalog.update_service(
            context=current_context(),
            service_id=service_id,
            service_name=data.get("service_name"),
            currency=data.get("currency"),
            tax_rate=data.get("tax_rate"),
            billing_day=data.get("billing_day"),
            end_date=data.get("end_date"),
        )
        return jsonify(to_json(service))

    @app.route("/api/services/<int:service_id>/status", methods=["POST"], endpoint="update_service_status")
    def update_service_status(service_id: int):
        data = _body()
        service = catalog.update_service_status(
            context=current_context(),
            service_id=service_id,
            status=data.get("status", ""),
            effective_date=data.get("effective_date"),
        )
        return jsonify(to_json(service))

    @app.route("/api/services/<int:service_id>", methods=["DELETE"], endpoint="delete_service")
    def delete_service(service_id: int):
        catalog.delete_service(context=current_context(), service_id=service_id)
        return "", 204

    @app.route("/api/services/summary", methods=["GET"], endpoint="service_summary")
    def service_summary():
        summary = catalog.service_summary(
            context=current_context(),
            stakeholder_id=request.args.get("stakeholder_id", type=int),
            on=request.args.get("on"),
        )
        return jsonify(to_json(summary))

    @app.route("/api/services/<int:service_id>/line-items", methods=["GET"], endpoint="list_line_items")
    def list_line_items(service_id: int):
        items = catalog.list_line_items(
            context=current_context(),
            service_id=service_id,
            active_on=request.args.get("active_on"),
        )
        return jsonify({"line_items": to_json(items)})

    @app.route("/api/services/<int:service_id>/line-items", methods=["POST"], endpoint="add_line_item")
    def add_line_item(service_id: int):
        data = _body()
        item = catalog.add_line_item(
            context=current_context(),
            service_id=service_id,
            item_key=data.get("item_key", ""),
            description=data.get("description", ""),
            amount=data.get("amount"),
            quantity=data.get("quantity", 1),
            effective_date=data.get("effective_date"),
        )
        return jsonify(to_json(item)), 201

    @app.route("/api/services/<int:service_id>/line-items/<item_key>", methods=["PUT"], endpoint="modify_line_item")
    def modify_line_item(service_id: int, item_key: str):
        data = _body()
        item = catalog.modify_line_item(
            context=current_context(),
            service_id=service_id,
            item_key=item_key,
            amount=data.get("amount"),
            quantity=data.get("quantity"),
            description=data.get("description"),
            effective_date=data.get("effective_date"),
        )
        return jsonify(to_json(item))

    @app.route("/api/services/<int:service_id>/line-items/<item_key>", methods=["DELETE"], endpoint="remove_line_item")
    def remove_line_item(service_id: int, item_key: str):
        data = _body()
        item = catalog.remove_line_item(
            context=current_context(),
            service_id=service_id,
            item_key=item_key,
            effective_date=data.get("effective_date") or request.args.get("effective_date"),
        )
        return jsonify(to_json(item))

    @app.route("/api/services/<int:service_id>/changes", methods=["GET"], endpoint="list_changes")
    def list_changes(service_id: int):
        changes = catalog.list_changes(context=current_context(), service_id=service_id)
        return jsonify({"changes": to_json(changes)})
