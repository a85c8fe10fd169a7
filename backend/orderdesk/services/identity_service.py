# Overview: Service-layer customer identity; resolves bearer tokens to customer records.

"""
Customer identity

The storefront and admin UI authenticate with an opaque bearer token issued
per customer. Only the SHA-256 hash is stored; tokens are high-entropy so a
fast hash is sufficient. A request without a token is a guest checkout.
"""

from __future__ import annotations

import hashlib
import secrets

from ..extensions import db
from ..models import Customer


class IdentityError(Exception):
    pass


def generate_token() -> str:
    """64 hex characters (32 bytes of entropy)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def resolve_customer(token: str | None) -> Customer | None:
    """Active customer for the token, or None."""
    if not token:
        return None
    customer = db.session.query(Customer).filter_by(token_hash=hash_token(token)).first()
    if customer is None or not customer.is_active:
        return None
    return customer


def upsert_customer(*, external_id: str, name: str, email: str | None = None, is_admin: bool = False) -> Customer:
    """Create or refresh the local record for an identity-provider subject."""
    external_id = (external_id or "").strip()
    name = (name or "").strip()
    if not external_id or not name:
        raise IdentityError("external_id and name are required")

    customer = db.session.query(Customer).filter_by(external_id=external_id).first()
    if customer is None:
        customer = Customer(external_id=external_id, name=name, email=email, is_admin=is_admin)
        db.session.add(customer)
    else:
        customer.name = name
        customer.email = email
        customer.is_admin = is_admin
    db.session.commit()
    return customer


def issue_token(customer_id: int) -> str:
    """
    Replace the customer's token and return the plaintext.

    The plaintext is shown once; only its hash is kept.
    """
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise IdentityError("Customer not found")
    token = generate_token()
    customer.token_hash = hash_token(token)
    db.session.commit()
    return token
