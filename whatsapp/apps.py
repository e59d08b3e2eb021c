import os
import sys

from django.apps import AppConfig
from django.conf import settings


class WhatsappConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "whatsapp"

    def ready(self):
        if not settings.DELIVERY["AUTOSTART"]:
            return
        # runserver's autoreloader imports the project twice
        if "runserver" in sys.argv and os.environ.get("RUN_MAIN") != "true":
            return
        from . import scheduler

        scheduler.start()
