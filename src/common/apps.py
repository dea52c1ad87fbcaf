from django.apps import AppConfig


class CommonConfig(AppConfig):
    """Shared base models, middleware, throttles and mail delivery."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "common"
    verbose_name = "Common"
