# backend/wsgi.py
from offer_ledger import create_app

app = create_app()
