import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import validate_runtime_config
from backend.database import Base, engine, ensure_availability_schema, ensure_appointment_schema
from backend.models import appointment, availability, notification, provider  # noqa: F401
from backend.routes import appointment_routes, availability_routes, series_routes

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv('CORS_ORIGINS', 'http://localhost:4200').split(',') if origin.strip()],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Clinic Booking API Running'}


app.include_router(availability_routes.router, prefix='/providers')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(series_routes.router, prefix='/appointment-series')
