"""Acceso a datos (SQLAlchemy ``text()``), siempre acotado por organización."""

from dataclasses import dataclass

from sqlalchemy.engine import Engine

from .audit import AuditRepository
from .devices import DeviceRepository
from .readings import ReadingRepository
from .schedules import ScheduleRepository


@dataclass(frozen=True)
class Repositories:
    devices: DeviceRepository
    readings: ReadingRepository
    schedules: ScheduleRepository
    audit: AuditRepository

    @classmethod
    def from_engine(cls, engine: Engine) -> "Repositories":
        return cls(
            devices=DeviceRepository(engine),
            readings=ReadingRepository(engine),
            schedules=ScheduleRepository(engine),
            audit=AuditRepository(engine),
        )


__all__ = ["AuditRepository", "DeviceRepository", "ReadingRepository", "Repositories", "ScheduleRepository"]
