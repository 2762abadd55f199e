# backend/wsgi.py
from roastery import create_app

app = create_app()
