# Admin interfaces for editions, capacity and group registration invites.

import typing as t

from django.contrib import admin, messages
from django.db.models import QuerySet
from django.http import HttpRequest
from django.urls import reverse
from django.utils.html import format_html
from unfold.admin import ModelAdmin, TabularInline

from . import models
from .exceptions import RegistrationEngineError
from .service import batch_service, upload_link_service


class EditionLinkMixin:
    """Mixin to add a link to an edition."""

    def edition_link(self, obj: t.Any) -> str | None:
        if not getattr(obj, "edition", None):
            return None
        url = reverse("admin:registrations_eventedition_change", args=[obj.edition.id])
        return format_html('<a href="{}">{}</a>', url, obj.edition.name)

    edition_link.short_description = "Edition"  # type: ignore[attr-defined]


class DistanceInline(TabularInline):  # type: ignore[misc]
    model = models.Distance
    extra = 0
    fields = ["label", "capacity", "capacity_scope", "reserved_count"]
    readonly_fields = ["reserved_count"]


class GroupBatchRowInline(TabularInline):  # type: ignore[misc]
    """Read-only view of the rows of a batch."""

    model = models.GroupBatchRow
    extra = 0
    can_delete = False
    fields = ["row_index", "email_normalized", "validation_errors", "reservation_error", "created_hold"]
    readonly_fields = fields
    ordering = ["row_index"]

    def has_add_permission(self, request: HttpRequest, obj: t.Any = None) -> bool:
        return False


@admin.register(models.EventEdition)
class EventEditionAdmin(ModelAdmin):  # type: ignore[misc]
    list_display = ["name", "slug", "shared_capacity", "shared_reserved_count", "created_at"]
    search_fields = ["name", "slug"]
    prepopulated_fields = {"slug": ("name",)}
    readonly_fields = ["shared_reserved_count"]
    inlines = [DistanceInline]


@admin.register(models.Distance)
class DistanceAdmin(ModelAdmin, EditionLinkMixin):  # type: ignore[misc]
    list_display = ["label", "edition_link", "capacity", "capacity_scope", "reserved_count"]
    list_filter = ["capacity_scope", "edition"]
    search_fields = ["label", "edition__name"]
    autocomplete_fields = ["edition"]
    readonly_fields = ["reserved_count"]


@admin.register(models.RegistrationHold)
class RegistrationHoldAdmin(ModelAdmin, EditionLinkMixin):  # type: ignore[misc]
    """Holds change only through the capacity ledger, so the admin is read-only."""

    list_display = ["id", "edition_link", "distance", "status", "quantity", "counted_against", "expires_at"]
    list_filter = ["status", "counted_against", "edition"]
    search_fields = ["id", "buyer__email", "distance__label"]
    date_hierarchy = "created_at"

    def get_readonly_fields(self, request: HttpRequest, obj: t.Any = None) -> list[str]:
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request: HttpRequest) -> bool:
        return False


@admin.register(models.UploadLink)
class UploadLinkAdmin(ModelAdmin, EditionLinkMixin):  # type: ignore[misc]
    list_display = ["__str__", "edition_link", "token_prefix", "is_active", "starts_at", "ends_at", "revoked_at"]
    list_filter = ["is_active", "edition"]
    search_fields = ["name", "token_prefix", "edition__name"]
    readonly_fields = ["token_hash", "token_prefix", "created_by", "revoked_at", "revoked_by"]
    actions = ["revoke_links"]

    def has_add_permission(self, request: HttpRequest) -> bool:
        # links are minted together with their raw token, which the admin cannot display
        return False

    @admin.action(description="Revoke selected upload links")
    def revoke_links(self, request: HttpRequest, queryset: QuerySet[models.UploadLink]) -> None:
        for link in queryset:
            upload_link_service.revoke_upload_link(link, revoked_by=request.user)  # type: ignore[arg-type]
        self.message_user(request, f"Revoked {queryset.count()} upload link(s).", messages.SUCCESS)


@admin.register(models.GroupBatch)
class GroupBatchAdmin(ModelAdmin, EditionLinkMixin):  # type: ignore[misc]
    list_display = ["id", "edition_link", "distance", "status", "created_by", "processed_at", "cancelled_at"]
    list_filter = ["status", "edition"]
    search_fields = ["id", "created_by__email"]
    readonly_fields = ["status", "processed_at", "cancelled_at"]
    inlines = [GroupBatchRowInline]
    actions = ["cancel_batches"]

    @admin.action(description="Cancel selected batches and release their holds")
    def cancel_batches(self, request: HttpRequest, queryset: QuerySet[models.GroupBatch]) -> None:
        cancelled = 0
        for batch in queryset:
            try:
                cancelled += batch_service.cancel_batch(batch)
            except RegistrationEngineError as e:
                self.message_user(request, f"Batch {batch.pk}: {e.detail}", messages.ERROR)
        self.message_user(request, f"Cancelled {cancelled} invite(s).", messages.SUCCESS)


@admin.register(models.RegistrationInvite)
class RegistrationInviteAdmin(ModelAdmin, EditionLinkMixin):  # type: ignore[misc]
    list_display = ["token_prefix", "edition_link", "email", "status", "is_current", "send_count", "expires_at"]
    list_filter = ["status", "is_current", "edition"]
    search_fields = ["email", "token_prefix"]
    date_hierarchy = "created_at"

    def get_readonly_fields(self, request: HttpRequest, obj: t.Any = None) -> list[str]:
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request: HttpRequest) -> bool:
        return False
