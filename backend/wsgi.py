# backend/wsgi.py
from vaxstock import create_app

app = create_app()
