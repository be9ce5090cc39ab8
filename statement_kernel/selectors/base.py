"""
Module: statement_kernel.selectors.base
Responsibility: Common root of the read-only selectors over form data,
    events, facilities, periods and templates.
Architecture position: Kernel > Selectors.  Selectors may import db/ and
    models/ only.

Selectors never add, delete, flush or commit, and they return frozen
dataclasses or plain values rather than ORM rows.  ``SQLAlchemyError``
propagates to the aggregation service, which wraps it in
``DataCollectionError``.
"""

from sqlalchemy.orm import Session


class BaseSelector:
    """Holds the caller's session; the caller owns the transaction."""

    def __init__(self, session: Session):
        self.session = session
