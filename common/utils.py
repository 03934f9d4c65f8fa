import datetime
import decimal
import uuid
from decimal import Decimal, ROUND_HALF_UP

from sync.models import SyncOutbox

MONEY_QUANT = Decimal("0.01")


def to_money(value):
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _to_json_compatible(value):
    if isinstance(value, dict):
        return {key: _to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def emit_outbox(entity, entity_id, op, payload):
    payload_data = _to_json_compatible(dict(payload or {}))

    envelope = {
        "entity": entity,
        "op": op,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "payload": payload_data,
    }

    return SyncOutbox.objects.create(
        entity=entity,
        entity_id=entity_id,
        op=op,
        payload=envelope,
    )
