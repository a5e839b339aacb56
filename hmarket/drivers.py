"""
Driver directory: availability, zone, public profile and last known position.
Drivers are users owned elsewhere; the order core only asks these questions.
"""
from typing import Protocol

import redis.asyncio as redis
from pydantic import BaseModel

from hmarket.models import Location
from hmarket.redis_client import available_drivers_key, driver_key


class DriverProfile(BaseModel):
    driver_id: str
    name: str = ""
    phone: str | None = None
    vehicle_type: str | None = None
    zone: str | None = None
    available: bool = False
    location: Location | None = None


class DriverDirectory(Protocol):
    async def is_available(self, driver_id: str) -> bool: ...

    async def list_available(self, zone: str | None = None) -> list[str]: ...

    async def describe(self, driver_id: str) -> DriverProfile | None: ...

    async def location(self, driver_id: str) -> Location | None: ...

    async def set_availability(self, driver_id: str, available: bool) -> None: ...

    async def update_location(self, driver_id: str, location: Location) -> None: ...


class InMemoryDriverDirectory:
    def __init__(self, profiles: list[DriverProfile] | None = None) -> None:
        self._profiles: dict[str, DriverProfile] = {p.driver_id: p for p in profiles or []}

    def register(self, profile: DriverProfile) -> None:
        self._profiles[profile.driver_id] = profile

    async def is_available(self, driver_id: str) -> bool:
        profile = self._profiles.get(driver_id)
        return bool(profile and profile.available)

    async def list_available(self, zone: str | None = None) -> list[str]:
        return [
            p.driver_id
            for p in self._profiles.values()
            if p.available and (zone is None or p.zone == zone)
        ]

    async def describe(self, driver_id: str) -> DriverProfile | None:
        profile = self._profiles.get(driver_id)
        return profile.model_copy() if profile else None

    async def location(self, driver_id: str) -> Location | None:
        profile = self._profiles.get(driver_id)
        return profile.location if profile else None

    async def set_availability(self, driver_id: str, available: bool) -> None:
        profile = self._profiles.setdefault(driver_id, DriverProfile(driver_id=driver_id))
        profile.available = available

    async def update_location(self, driver_id: str, location: Location) -> None:
        profile = self._profiles.setdefault(driver_id, DriverProfile(driver_id=driver_id))
        profile.location = location


class RedisDriverDirectory:
    """
    driver:<id> hash holds the profile; drivers:available (and drivers:available:<zone>)
    sets hold the ids of drivers currently accepting work.
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    async def is_available(self, driver_id: str) -> bool:
        return bool(await self._redis.sismember(available_drivers_key(), driver_id))

    async def list_available(self, zone: str | None = None) -> list[str]:
        return sorted(await self._redis.smembers(available_drivers_key(zone)))

    async def describe(self, driver_id: str) -> DriverProfile | None:
        data = await self._redis.hgetall(driver_key(driver_id))
        if not data:
            return None
        return DriverProfile(
            driver_id=driver_id,
            name=data.get("name", ""),
            phone=data.get("phone"),
            vehicle_type=data.get("vehicle_type"),
            zone=data.get("zone"),
            available=data.get("available") == "1",
            location=_location_from_hash(data),
        )

    async def location(self, driver_id: str) -> Location | None:
        data = await self._redis.hgetall(driver_key(driver_id))
        return _location_from_hash(data)

    async def set_availability(self, driver_id: str, available: bool) -> None:
        zone = await self._redis.hget(driver_key(driver_id), "zone")
        keys = [available_drivers_key()] + ([available_drivers_key(zone)] if zone else [])
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(driver_key(driver_id), "available", "1" if available else "0")
            for key in keys:
                if available:
                    pipe.sadd(key, driver_id)
                else:
                    pipe.srem(key, driver_id)
            await pipe.execute()

    async def update_location(self, driver_id: str, location: Location) -> None:
        mapping = {"lat": str(location.lat), "lng": str(location.lng)}
        if location.address:
            mapping["address"] = location.address
        await self._redis.hset(driver_key(driver_id), mapping=mapping)


def _location_from_hash(data: dict) -> Location | None:
    if not data.get("lat") or not data.get("lng"):
        return None
    return Location(lat=float(data["lat"]), lng=float(data["lng"]), address=data.get("address"))
