# wsgi.py
from app import app as droppay_app

# gunicorn wsgi:application
application = droppay_app
