# backend/wsgi.py
from ordering import create_app

app = create_app()
