# sns_publisher/services/browser_accounts.py
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from sns_publisher.exceptions import JobStateError, NotFoundError
from sns_publisher.infrastructure.jobs_repo import BrowserAccountsRepository, JobsRepository
from sns_publisher.infrastructure.vault import CredentialVault
from sns_publisher.models.job import BrowserAccount
from sns_publisher.platforms.registry import WORKER_PLATFORMS

logger = structlog.get_logger(__name__)


class BrowserAccountService:
    def __init__(self, session: AsyncSession, vault: CredentialVault):
        self.session = session
        self.vault = vault
        self.accounts = BrowserAccountsRepository(session)
        self.jobs = JobsRepository(session)

    async def save_account(
        self,
        owner_id: uuid.UUID,
        login_id: str,
        password: str,
        now: datetime,
        platform: str = "naver_blog",
        blog_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> BrowserAccount:
        """Create, or replace the password of, the account keyed by (owner, platform, login)."""
        if platform not in WORKER_PLATFORMS:
            raise ValueError(f"unsupported platform: {platform}")
        account = await self.accounts.get_by_login(owner_id, platform, login_id)
        if account is None:
            account = BrowserAccount(owner_id=owner_id, platform=platform, login_id=login_id, created_at=now, password_enc="")
        account.password_enc = self.vault.encrypt(password)
        account.blog_id = blog_id or login_id
        account.display_name = display_name
        account.active = True
        account.updated_at = now
        account = await self.accounts.save(account)
        logger.info("browser_account_saved", account_id=str(account.id), platform=platform)
        return account

    async def update_account(
        self,
        owner_id: uuid.UUID,
        account_id: uuid.UUID,
        now: datetime,
        password: Optional[str] = None,
        blog_id: Optional[str] = None,
        display_name: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> BrowserAccount:
        account = await self.get_account(owner_id, account_id)
        if password:
            account.password_enc = self.vault.encrypt(password)
        if blog_id is not None:
            account.blog_id = blog_id
        if display_name is not None:
            account.display_name = display_name
        if active is not None:
            account.active = active
        account.updated_at = now
        account = await self.accounts.save(account)
        logger.info("browser_account_updated", account_id=str(account.id), password_changed=bool(password))
        return account

    async def get_account(self, owner_id: uuid.UUID, account_id: uuid.UUID) -> BrowserAccount:
        account = await self.accounts.get_owned(account_id, owner_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def list_accounts(self, owner_id: uuid.UUID) -> List[BrowserAccount]:
        return await self.accounts.list_by_owner(owner_id)

    async def delete_account(self, owner_id: uuid.UUID, account_id: uuid.UUID) -> None:
        """Jobs keep a reference to their account, so an account in use is refused; deactivate it instead."""
        account = await self.get_account(owner_id, account_id)
        in_use = await self.jobs.count_for_account(account_id)
        if in_use:
            raise JobStateError(f"account is used by {in_use} job(s); delete them or deactivate the account")
        try:
            await self.accounts.delete(account)
        except IntegrityError:
            # a job was created for it after the check
            await self.session.rollback()
            raise JobStateError("account is used by a job; delete it or deactivate the account")
        logger.info("browser_account_deleted", account_id=str(account_id))
