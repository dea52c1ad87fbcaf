import typing as t
import uuid

from django.db import models


class TimeStampedModel(models.Model):
    """UUID-keyed base model that validates itself on every save."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True, db_index=True)

    class Meta:
        abstract = True

    def save(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Run full_clean, then save.

        Partial saves always include ``updated_at``.
        """
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "updated_at" not in update_fields:
            kwargs["update_fields"] = [*update_fields, "updated_at"]
        self.full_clean()
        super().save(*args, **kwargs)
