from __future__ import annotations

import logging
import re
from typing import Optional

from ..db.base import BaseDBManager
from ..models.api_models import ResolvedPhoneNumber


logger = logging.getLogger(__name__)

_US_NUMBER = re.compile(r"\+1\d{10}")

INTERNATIONAL_NO_PROVIDER_MESSAGE = (
    "No phone provider configured. International calls require setting up your own "
    "phone provider in Settings. Default provider is only available for US phone numbers (+1)."
)
NO_PROVIDER_MESSAGE = (
    "No phone provider configured. Please add a phone provider in your settings or use "
    "a US phone number (+1) to use the default provider."
)


def is_us_phone_number(phone_number: Optional[str]) -> bool:
    """E.164 number with country code +1 and exactly ten national digits."""
    return bool(phone_number) and _US_NUMBER.fullmatch(phone_number) is not None


def get_no_phone_provider_error_message(target_phone_number: Optional[str] = None) -> str:
    if target_phone_number and not is_us_phone_number(target_phone_number):
        return INTERNATIONAL_NO_PROVIDER_MESSAGE
    return NO_PROVIDER_MESSAGE


class DefaultPhoneProviderResolver:
    """
    Chooses the outbound number for a call.

    A user's own default provider always wins once it has been registered
    with the voice platform. Otherwise the platform-owned number is lent
    out, but only for calls to US numbers.
    """

    def __init__(self, db: BaseDBManager, default_us_vapi_phone_number_id: str) -> None:
        self._db = db
        self._default_us_vapi_phone_number_id = default_us_vapi_phone_number_id

    async def get_phone_provider_or_default(
        self, user_id: str, target_phone_number: Optional[str] = None
    ) -> Optional[ResolvedPhoneNumber]:
        provider = await self._db.get_default_phone_provider(user_id)
        if provider is not None and provider.vapi_phone_number_id:
            logger.info(
                "Using user phone provider",
                extra={"user_id": user_id, "phone_provider_id": provider.id},
            )
            return ResolvedPhoneNumber(
                vapi_phone_number_id=provider.vapi_phone_number_id, is_default=False
            )

        if target_phone_number and is_us_phone_number(target_phone_number):
            logger.info(
                "Using default US phone provider",
                extra={"user_id": user_id, "target_phone_number": target_phone_number},
            )
            return ResolvedPhoneNumber(
                vapi_phone_number_id=self._default_us_vapi_phone_number_id, is_default=True
            )

        if target_phone_number:
            logger.warning(
                "Cannot use default provider for non-US number",
                extra={"user_id": user_id, "target_phone_number": target_phone_number},
            )
        else:
            logger.warning(
                "No phone provider configured and no target number to check",
                extra={"user_id": user_id},
            )
        return None
