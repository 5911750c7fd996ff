from fastapi import FastAPI
from fastapi_sqlalchemy import DBSessionMiddleware
from .dependencies import DATABASE_URL, create_db_engine


def create_app(database_url: str = None) -> FastAPI:
    app = FastAPI(title="Booking Engine")

    app.add_middleware(DBSessionMiddleware, custom_engine=create_db_engine(database_url or DATABASE_URL))

    from .routes import router as main_router
    app.include_router(main_router)

    return app
