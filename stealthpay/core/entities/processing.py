from datetime import datetime
from enum import Enum
from pydantic import BaseModel
from typing import Optional


class ProcessingType(str, Enum):
    PAYMENT_OWNER_SCAN = "PAYMENT_OWNER_SCAN"
    PAYMENT_PAYER_USER_ID_SCAN = "PAYMENT_PAYER_USER_ID_SCAN"
    WITHDRAWAL_USER_ID_SCAN = "WITHDRAWAL_USER_ID_SCAN"
    WITHDRAWAL_DESTINATION_USER_ID_SCAN = "WITHDRAWAL_DESTINATION_USER_ID_SCAN"


class ProcessingLogEntry(BaseModel):
    process_id: str
    process_type: ProcessingType
    processed_count: int = 0
    is_processed: bool = False
    last_processed_at: Optional[datetime] = None
    max_retries: int = 5
    created_at: datetime
