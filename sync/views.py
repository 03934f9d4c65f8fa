from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.exceptions import error_response
from common.permissions import RoleCapabilityPermission
from sync.models import SyncOutbox
from sync.serializers import SyncPullSerializer


class SyncPullView(APIView):
    """Change feed for clients that refresh only what changed since their cursor."""

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "sync.view"}

    def get(self, request):
        serializer = SyncPullSerializer(data=request.query_params)
        if not serializer.is_valid():
            return error_response(
                code="validation_error",
                message="Validation failed.",
                errors=serializer.errors,
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            )

        cursor = serializer.validated_data["cursor"]
        limit = serializer.validated_data["limit"]
        entity = serializer.validated_data.get("entity")

        updates_qs = SyncOutbox.objects.filter(id__gt=cursor).order_by("id")
        if entity:
            updates_qs = updates_qs.filter(entity=entity)
        updates = list(updates_qs[: limit + 1])
        has_more = len(updates) > limit
        updates = updates[:limit]
        server_cursor = updates[-1].id if updates else cursor

        return Response(
            {
                "server_cursor": server_cursor,
                "updates": [
                    {
                        "cursor": update.id,
                        "entity": (update.payload or {}).get("entity", update.entity),
                        "op": (update.payload or {}).get("op", update.op),
                        "entity_id": (update.payload or {}).get("entity_id", str(update.entity_id)),
                        "payload": (update.payload or {}).get("payload", update.payload),
                        "created_at": update.created_at,
                    }
                    for update in updates
                ],
                "has_more": has_more,
            }
        )
