import logging

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import InternalServerError

from storefront import (
    CartService,
    NoopNotificationSender,
    PurchaseOrchestrator,
    SESNotificationSender,
    Settings,
    SQLiteLedgerStore,
)
from storefront.errors import ConflictError, InvalidFilterValue, NotFoundError, StorefrontError
from storefront.models import CartSort, InvoiceSort, LibrarySort, PageRequest

api = Blueprint("api", __name__)


# HELPERS

def cart_service() -> CartService:
    return current_app.extensions["storefront.cart"]


def purchase_orchestrator() -> PurchaseOrchestrator:
    return current_app.extensions["storefront.purchase"]


def page_request(sort_type):
    return PageRequest.parse(
        sort_type,
        sort=request.args.get("sort"),
        order=request.args.get("order"),
        limit=request.args.get("limit"),
        offset=request.args.get("offset"),
    )


def game_to_json(game):
    return {
        "id": game.id,
        "title": game.title,
        "price": str(game.price),
        "isActive": game.is_active,
        "releaseDate": game.release_date.isoformat() if game.release_date else None,
        "ageRating": game.age_rating,
        "publisher": {
            "id": game.publisher.id,
            "name": game.publisher.name,
            "country": game.publisher.country,
            "vatin": game.publisher.vatin,
        },
    }


def invoice_to_json(invoice):
    return {
        "id": invoice.id,
        "userId": invoice.user_id,
        "user": {
            "displayName": invoice.user_display_name,
            "email": invoice.user_email,
            "country": invoice.user_country,
            "vatin": invoice.user_vatin,
        },
        "taxRate": str(invoice.tax_rate),
        "createdAt": invoice.created_at.isoformat(),
        "lines": [
            {
                "gameId": line.game_id,
                "gameTitle": line.game_title,
                "price": str(line.price),
                "tax": str(line.tax),
                "publisher": {
                    "name": line.publisher_name,
                    "country": line.publisher_country,
                    "vatin": line.publisher_vatin,
                },
            }
            for line in invoice.lines
        ],
        "subtotal": str(invoice.subtotal),
        "tax": str(invoice.tax),
        "total": str(invoice.total),
    }


def page_to_json(page, to_json):
    return {"total": page.total, "results": [to_json(item) for item in page.results]}


def fault(status, code, message):
    return jsonify({"code": code, "message": message}), status


# CART

@api.get("/users/<int:user_id>/cart")
def list_cart(user_id):
    page = cart_service().list_cart(user_id, page_request(CartSort))
    return jsonify(page_to_json(page, game_to_json))


@api.post("/users/<int:user_id>/cart/<int:game_id>")
def add_cart_game(user_id, game_id):
    cart_service().add_game(user_id, game_id)
    return "", 204


@api.delete("/users/<int:user_id>/cart/<int:game_id>")
def remove_cart_game(user_id, game_id):
    cart_service().remove_game(user_id, game_id)
    return "", 204


@api.post("/users/<int:user_id>/cart/purchase")
def purchase_cart(user_id):
    invoice = purchase_orchestrator().purchase(user_id)
    return jsonify(invoice_to_json(invoice)), 201


# LIBRARY AND INVOICES

@api.get("/users/<int:user_id>/library")
def list_library(user_id):
    page = cart_service().list_library(user_id, page_request(LibrarySort))
    return jsonify(page_to_json(page, game_to_json))


@api.get("/users/<int:user_id>/invoices")
def list_invoices(user_id):
    page = cart_service().list_invoices(user_id, page_request(InvoiceSort))
    return jsonify(page_to_json(page, invoice_to_json))


# ERRORS

@api.app_errorhandler(StorefrontError)
def handle_storefront_error(e):
    if isinstance(e, NotFoundError):
        return fault(404, e.code, e.message)
    if isinstance(e, ConflictError):
        return fault(409, e.code, e.message)
    if isinstance(e, InvalidFilterValue):
        return fault(400, e.code, f"{e.message}: {e.filter_name}")
    return fault(500, StorefrontError.code, StorefrontError.message)


@api.app_errorhandler(InternalServerError)
def handle_internal_server_error(e):
    return fault(500, StorefrontError.code, StorefrontError.message)


# APP

def build_notifier(settings):
    if not settings.email_enabled:
        return NoopNotificationSender()
    return SESNotificationSender(sender=settings.ses_sender, region=settings.aws_region)


def create_app(settings=None, store=None, notifier=None):
    settings = settings or Settings.from_env()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )

    if store is None:
        store = SQLiteLedgerStore(settings.db_name)
        store.init_schema()

    app = Flask(__name__)
    app.extensions["storefront.cart"] = CartService(store)
    app.extensions["storefront.purchase"] = PurchaseOrchestrator(
        store,
        notifier or build_notifier(settings),
        tax_rate=settings.tax_rate,
        timeout=settings.purchase_timeout,
    )
    app.register_blueprint(api)
    return app


if __name__ == "__main__":
    create_app().run(debug=True)
