"""
Order Service — イベント定義

アウトボックスに保存するドメインイベント。
イベントは過去形で命名し、不変(immutable)として扱う。

event_type タグがペイロードのデコーダを選ぶ。
"""

import json

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import SerializationFailure

ORDER_CREATED = "ORDER_CREATED"


class OrderCreated(BaseModel):
    """注文が作成された"""
    model_config = ConfigDict(frozen=True)

    order_id: str


EVENT_TYPES: dict[str, type[BaseModel]] = {
    ORDER_CREATED: OrderCreated,
}


def encode_event(event: BaseModel) -> str:
    try:
        return json.dumps(event.model_dump(mode="json"))
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Failed to serialize {type(event).__name__}") from e


def decode_event(event_type: str, payload: str) -> BaseModel:
    """event_type に対応するモデルでペイロードを復元する。"""
    model = EVENT_TYPES.get(event_type)
    if model is None:
        raise SerializationFailure(f"Unknown event type: {event_type}")
    try:
        return model.model_validate_json(payload)
    except ValidationError as e:
        raise SerializationFailure(f"Malformed {event_type} payload") from e
