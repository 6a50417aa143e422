from .auth import User, SessionToken
from .documents import DocumentSequence
from .ledger import Offer, Invoice, Payment

__all__ = [
    'User', 'SessionToken',
    'DocumentSequence',
    'Offer', 'Invoice', 'Payment',
]
