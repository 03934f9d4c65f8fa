from django.db import models


class SyncOutbox(models.Model):
    """Change feed of committed ledger mutations, read by clients through a cursor."""

    id = models.BigAutoField(primary_key=True)
    entity = models.CharField(max_length=64)
    entity_id = models.UUIDField(null=True, blank=True)
    op = models.CharField(max_length=16)
    payload = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["entity", "id"], name="syncoutbox_entity_id_idx"),
        ]
