from django.apps import AppConfig
from django.utils.translation import gettext_lazy as _


class NestedSetAppConfig(AppConfig):
    name = "nestedset"
    label = "nestedset"
    verbose_name = _("Nested sets")
    default_auto_field = "django.db.models.AutoField"
