# Overview: Flask CLI commands for seeding the catalog and operational maintenance.

import click
from flask.cli import with_appcontext

from .errors import FulfillmentError
from .extensions import db
from .models import Book, Discount
from .principal import Principal, ROLE_ROOT
from .services import card_service, idempotency_service, stock_service


SEED_BOOKS = [
    # (isbn, title, author, price_cents, stock)
    ("9780307474728", "Cien años de soledad", "Gabriel García Márquez", 4500000, 10),
    ("9788420412146", "Don Quijote de la Mancha", "Miguel de Cervantes", 3800000, 6),
    ("9788437604947", "Rayuela", "Julio Cortázar", 4200000, 4),
    ("9789584276193", "La vorágine", "José Eustasio Rivera", 2900000, 8),
]


@click.group('catalog')
def catalog_group():
    """Catalog management commands."""


@catalog_group.command('seed')
@click.option('--with-discounts/--without-discounts', default=True, show_default=True)
@with_appcontext
def seed_catalog_cli(with_discounts):
    """Create sample books with stock (idempotent by ISBN)."""
    click.echo("START Seeding catalog...")
    created = 0
    for isbn, title, author, price_cents, qty in SEED_BOOKS:
        book = Book.query.filter_by(isbn=isbn).first()
        if book is not None:
            click.echo(f"WARN  Book '{title}' already exists, skipping...")
            continue
        book = Book(isbn=isbn, title=title, author=author, price_cents=price_cents, is_active=True)
        db.session.add(book)
        db.session.commit()
        stock_service.restock(book.id, qty, reason="Initial stock", reference=f"seed:{isbn}", actor_id="cli")
        created += 1
        click.echo(f"PASS Created book: {title} (ID: {book.id}, stock: {qty})")

    if with_discounts and Discount.query.filter_by(code="BIENVENIDA10").first() is None:
        db.session.add(Discount(kind="porcentaje", value=10, code="BIENVENIDA10",
                                description="10% welcome discount"))
        db.session.commit()
        click.echo("PASS Created discount code BIENVENIDA10 (10%)")

    click.echo(f"DONE {created} book(s) created")


@click.group('cards')
def cards_group():
    """Payment card commands."""


@cards_group.command('set-balance')
@click.argument('card_id')
@click.argument('balance_cents', type=int)
@click.option('--reason', required=True, help='Reason recorded on the balance movement')
@click.option('--operator', default='cli', show_default=True, help='Operator id recorded as actor')
@with_appcontext
def set_balance_cli(card_id, balance_cents, reason, operator):
    """Override a debit card balance (recorded as ajuste_absoluto)."""
    principal = Principal(user_id=operator, role=ROLE_ROOT)
    try:
        movement = card_service.set_absolute_balance(principal, card_id, balance_cents, reason)
    except FulfillmentError as e:
        raise click.ClickException(e.message)
    click.echo(
        f"PASS Card {card_id}: {movement.balance_before_cents} -> {movement.balance_after_cents} cents"
    )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-idempotency')
@with_appcontext
def purge_idempotency_cli():
    """Delete expired idempotency records."""
    removed = idempotency_service.purge_expired()
    click.echo(f"PASS Removed {removed} expired idempotency record(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(catalog_group)
    app.cli.add_command(cards_group)
    app.cli.add_command(maintenance_group)
