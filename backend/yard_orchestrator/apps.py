from django.apps import AppConfig


class YardOrchestratorConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "yard_orchestrator"
    label = "yard_orchestrator"
    verbose_name = "Shipyard orchestrator"
