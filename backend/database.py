import os
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from backend.core import config


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic_booking.db")


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, echo=config.SQL_ECHO)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_availability_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_availability_schema() -> None:
    global _availability_schema_checked

    if _availability_schema_checked:
        return

    with _schema_lock:
        if _availability_schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        with engine.begin() as connection:
            if 'availability_windows' in table_names:
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_windows_provider_day '
                        'ON availability_windows(provider_id, day_of_week, is_active)'
                    )
                )
            if 'break_intervals' in table_names:
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_breaks_provider_day '
                        'ON break_intervals(provider_id, day_of_week, is_active)'
                    )
                )

        _availability_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('is_overbooked', 'ALTER TABLE appointments ADD COLUMN is_overbooked BOOLEAN DEFAULT FALSE'),
            ('rescheduled_from_id', 'ALTER TABLE appointments ADD COLUMN rescheduled_from_id INTEGER'),
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ('is_rebook', 'ALTER TABLE appointments ADD COLUMN is_rebook BOOLEAN DEFAULT FALSE'),
            ('series_id', 'ALTER TABLE appointments ADD COLUMN series_id INTEGER'),
            ('series_occurrence', 'ALTER TABLE appointments ADD COLUMN series_occurrence INTEGER'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_provider_date '
                    'ON appointments(provider_id, appointment_date, status)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_tenant_date ON appointments(tenant_id, appointment_date)')
            )

        _appointment_schema_checked = True
