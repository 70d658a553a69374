from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.exceptions import ConflictError, TransientStoreError


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield session
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"Concurrent write rejected: {exc.orig}") from exc
    except (OperationalError, InterfaceError) as exc:
        await session.rollback()
        raise TransientStoreError(f"Store unavailable: {exc.orig}") from exc
    except DBAPIError as exc:
        await session.rollback()
        if exc.connection_invalidated:
            raise TransientStoreError(f"Store connection lost: {exc.orig}") from exc
        raise
    except BaseException:
        await session.rollback()
        raise
