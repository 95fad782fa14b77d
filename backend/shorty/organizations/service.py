import logging

from sqlalchemy import select

from shorty.config import settings
from shorty.database import async_session
from shorty.organizations.models import Organization

logger = logging.getLogger(__name__)


async def bootstrap_global_organization() -> None:
    """Create the global organization on first startup."""
    async with async_session() as db:
        result = await db.execute(select(Organization).where(Organization.is_global.is_(True)))
        if result.scalar_one_or_none() is not None:
            return

        db.add(Organization(name=settings.global_org_name, slug=settings.global_org_slug, is_global=True))
        await db.commit()
        logger.info("Created global organization %s", settings.global_org_slug)
