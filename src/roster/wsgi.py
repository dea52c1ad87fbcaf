"""WSGI config for the roster project."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "roster.settings")

application = get_wsgi_application()
