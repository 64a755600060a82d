import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from jinja2 import Environment, PackageLoader, select_autoescape

from .currency import format_eur
from .errors import NotificationError
from .models import Game, User
from .pricing import Quote, tax_percent

INVOICE_EMAIL_SUBJECT = "Game Store Invoice"
INVOICE_EMAIL_TEMPLATE = "email/invoice.html"

logger = logging.getLogger(__name__)

_templates = Environment(
    loader=PackageLoader("storefront", "templates"),
    autoescape=select_autoescape(["html"]),
)
_templates.filters["eur"] = format_eur


class NotificationSender(Protocol):
    def send_invoice_email(self, to_address: str, subject: str, html_body: str) -> None:
        ...


class NoopNotificationSender:
    """
    Sender used when email delivery is disabled.
    """

    def send_invoice_email(self, to_address: str, subject: str, html_body: str) -> None:
        logger.debug("email disabled, skipping invoice email to %s", to_address)


class SESNotificationSender:
    """
    Deliver HTML email synchronously through Amazon SES.
    """

    def __init__(self, sender: str, region: str, client=None):
        if not sender:
            raise RuntimeError("SES_SENDER environment variable is not set.")
        self.sender = sender
        self.client = client or boto3.client("ses", region_name=region)

    def send_invoice_email(self, to_address: str, subject: str, html_body: str) -> None:
        try:
            self.client.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [to_address]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {"Html": {"Data": html_body, "Charset": "UTF-8"}},
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise NotificationError(f"Failed to send invoice email via SES: {e}") from e


def render_invoice_email(
    user: User,
    games: List[Game],
    quote: Quote,
    tax_rate: Decimal,
    created_at: datetime,
) -> str:
    """
    Render the invoice email body.

    Each game is listed with its tax-inclusive price (its price plus its share
    of the total tax, so the lines add up to the total); the footer carries the
    subtotal, the tax percentage and amount, and the total.
    """
    template = _templates.get_template(INVOICE_EMAIL_TEMPLATE)
    return template.render(
        user=user,
        games=[
            {"title": game.title, "publisher": game.publisher.name, "price": game.price + line_tax}
            for game, line_tax in zip(games, quote.line_taxes)
        ],
        subtotal=quote.subtotal,
        tax_percent=tax_percent(tax_rate),
        tax=quote.tax,
        total=quote.total,
        created_at=created_at.date().isoformat(),
    )
