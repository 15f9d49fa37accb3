from django.apps import AppConfig


class LedgerConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "ledger"
    verbose_name = "Star ledger"

    def ready(self):
        # Registers the default billing outcome receivers.
        from ledger import signals  # noqa: F401
