from django.db import models
from django.utils import timezone


class BaseModel(models.Model):
    """
    Abstract base model providing common timestamp fields.

    Every ledger and session model inherits from this so created_at /
    updated_at are tracked consistently. Queryset ``update()`` calls bypass
    ``auto_now``, so conditional updates go through :meth:`stamped`.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at"]

    @staticmethod
    def stamped(**fields):
        """Return ``fields`` with ``updated_at`` set, for queryset updates."""
        fields["updated_at"] = timezone.now()
        return fields
