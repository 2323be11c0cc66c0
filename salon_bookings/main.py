from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from salon_bookings import settings
from salon_bookings.cache import close_redis
from salon_bookings.commissions import commission_engine
from salon_bookings.crud import booking_crud
from salon_bookings.deps import oauth2_scheme
from salon_bookings.routers import booking, commissions, service_instances, sessions
from salon_bookings.routers import vouchers as vouchers_router

TORTOISE_MODULES = {"models": ["salon_bookings.models"]}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    async with RegisterTortoise(
        app,
        db_url=settings.db_url,
        modules=TORTOISE_MODULES,
        generate_schemas=settings.GENERATE_SCHEMAS,
        use_tz=True,
        _enable_global_fallback=True,
    ):
        # picks up bookings whose deferred commission check died with the last process
        sweep = await commission_engine.apply_missing_commissions()
        if not sweep.is_success:
            logger.warning("Startup commission sweep failed: {}", sweep.error)
        yield
        await commission_engine.shutdown()
        await booking_crud.drain()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="salon-bookings-ms",
        lifespan=lifespan,
        dependencies=[Depends(oauth2_scheme)],
    )
    app.include_router(booking.router)
    app.include_router(service_instances.router)
    app.include_router(commissions.router)
    app.include_router(sessions.router)
    app.include_router(vouchers_router.router)
    return app


app = create_app()
