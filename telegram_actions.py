#!/usr/bin/env python3
"""
Telegram-side collaborators for the enrollment and reconciliation flows
- TelegramInviteIssuer: single-use invite link sent to the user by DM
- TelegramMemberRemover: kick (ban + unban) from the private group
"""

import logging
from datetime import datetime, timedelta, timezone

from telegram import Bot

logger = logging.getLogger(__name__)


class TelegramInviteIssuer:
    def __init__(self, bot: Bot, chat_id: int, ttl_minutes: int = 10):
        self.bot = bot
        self.chat_id = chat_id
        self.ttl_minutes = ttl_minutes

    async def issue_invite(self, user_id: int) -> str:
        invite = await self.bot.create_chat_invite_link(
            chat_id=self.chat_id,
            name=f"Verified member {user_id}",
            member_limit=1,
            creates_join_request=False,
            expire_date=datetime.now(timezone.utc) + timedelta(minutes=self.ttl_minutes),
        )
        await self.bot.send_message(
            chat_id=user_id,
            text=f"Your request has been approved. Join the chat using this link: {invite.invite_link}",
        )
        logger.info(f"✅ Invite sent to {user_id}")
        return invite.invite_link


class TelegramMemberRemover:
    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def remove_member(self, user_id: int) -> None:
        # unban right away so the user can rejoin after re-qualifying
        await self.bot.ban_chat_member(chat_id=self.chat_id, user_id=user_id)
        await self.bot.unban_chat_member(chat_id=self.chat_id, user_id=user_id, only_if_banned=True)
