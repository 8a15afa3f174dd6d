from datetime import datetime
from typing import Literal, TypedDict


Direction = Literal["inbound", "outbound"]


class MessageDocument(TypedDict, total=False):
    _id: str
    # seller whose inbox this row belongs to
    operator_id: str
    # counterparty, usually the customer's phone number
    conversation_key: str
    direction: Direction
    body: str
    created_at: datetime
