"""
Account Repository

Identity lookups for authorization. Sign-up and credentials live elsewhere;
only the role and id are read by the ordering flow.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canteen.models import Account, AccountRole


class AccountRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, account_id: int) -> Optional[Account]:
        result = await self.session.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def create_account(
        self,
        name: str,
        email: str,
        role: AccountRole = AccountRole.STUDENT,
    ) -> Account:
        account = Account(name=name, email=email, role=role)
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account
