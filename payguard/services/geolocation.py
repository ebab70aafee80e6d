from __future__ import annotations

import http.client
import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request
from urllib.parse import quote

from payguard.settings import get_settings

logger = logging.getLogger("payguard.geolocation")

UNKNOWN_COUNTRY = "XX"


@dataclass(frozen=True, slots=True)
class GeoInfo:
    country_code: str
    region: str
    city: str = ""
    isp: str = ""
    proxy: bool = False
    hosting: bool = False

    @classmethod
    def unknown(cls) -> GeoInfo:
        return cls(country_code=UNKNOWN_COUNTRY, region="", city="", isp="")

    @property
    def is_known(self) -> bool:
        return bool(self.country_code) and self.country_code != UNKNOWN_COUNTRY

    def to_dict(self) -> dict[str, Any]:
        return {
            "country_code": self.country_code,
            "region": self.region,
            "city": self.city,
            "isp": self.isp,
            "proxy": self.proxy,
            "hosting": self.hosting,
        }


class GeoLocator(Protocol):
    def lookup(self, ip: str | None) -> GeoInfo: ...


class StaticGeoLocator:
    """Returns the same answer for every address. Useful for tests and offline runs."""

    def __init__(self, geo: GeoInfo | None = None):
        self.geo = geo or GeoInfo.unknown()

    def lookup(self, ip: str | None) -> GeoInfo:
        return self.geo


def _is_private_address(ip: str) -> bool:
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return parsed.is_private or parsed.is_loopback or parsed.is_link_local


class HttpGeoLocator:
    """ip-api.com compatible lookup. Any failure degrades to ``GeoInfo.unknown()``."""

    def __init__(
        self,
        *,
        url_template: str,
        timeout_seconds: int = 3,
        home_country: str = "US",
        home_region: str = "",
    ):
        self.url_template = url_template
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.home_country = home_country
        self.home_region = home_region

    def _fetch(self, ip: str) -> dict[str, Any]:
        url = self.url_template.format(ip=quote(ip, safe=""))
        request = urllib_request.Request(url=url, method="GET", headers={"Accept": "application/json"})
        with urllib_request.urlopen(request, timeout=self.timeout_seconds) as response:
            body = response.read(4096).decode("utf-8", errors="ignore")
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("geolocation payload is not an object")
        return payload

    def lookup(self, ip: str | None) -> GeoInfo:
        normalized_ip = (ip or "").strip()
        if not normalized_ip:
            return GeoInfo.unknown()
        if _is_private_address(normalized_ip):
            return GeoInfo(
                country_code=self.home_country,
                region=self.home_region,
                city="Local Area",
                isp="Local ISP",
            )

        try:
            payload = self._fetch(normalized_ip)
        except (urllib_error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as exc:
            logger.warning(
                "geolocation_lookup_failed",
                extra={"ip": normalized_ip, "error": str(exc)},
            )
            return GeoInfo.unknown()

        if payload.get("status") not in {None, "success"}:
            logger.warning(
                "geolocation_lookup_rejected",
                extra={"ip": normalized_ip, "error": payload.get("message")},
            )
            return GeoInfo.unknown()

        return GeoInfo(
            country_code=str(payload.get("countryCode") or UNKNOWN_COUNTRY).upper(),
            region=str(payload.get("region") or "").upper(),
            city=str(payload.get("city") or ""),
            isp=str(payload.get("isp") or ""),
            proxy=bool(payload.get("proxy")),
            hosting=bool(payload.get("hosting")),
        )


def build_geo_locator() -> GeoLocator:
    settings = get_settings()
    return HttpGeoLocator(
        url_template=settings.geo_lookup_url,
        timeout_seconds=settings.geo_timeout_seconds,
        home_country=settings.geo_home_country,
        home_region=settings.geo_home_region,
    )
