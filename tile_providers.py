from __future__ import annotations

from dataclasses import dataclass

import requests


@dataclass(frozen=True)
class TileProvider:
    name: str
    url_template: str
    attribution: str
    tile_size: int = 256
    zoom_offset: int = 0
    needs_key: bool = False

    def url(self, z: int, x: int, y: int, api_key: str = "", subdomain: str = "a") -> str:
        return self.url_template.format(s=subdomain, z=z, x=x, y=y, key=api_key)

    def leaflet_options(self, api_key: str = "") -> dict:
        """Options the viewer page hands to L.tileLayer."""
        return {
            "url": self.url_template.replace("{key}", api_key),
            "attribution": self.attribution,
            "tileSize": self.tile_size,
            "zoomOffset": self.zoom_offset,
            "maxZoom": 19,
            "maxNativeZoom": 19,
            "keepBuffer": 4,
            "updateInterval": 20,
        }


TILE_PROVIDERS = {
    "esri": TileProvider(
        "esri",
        "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
        "Tiles &copy; Esri",
    ),
    "osm": TileProvider(
        "osm",
        "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png",
        "&copy; OpenStreetMap contributors",
    ),
    "google": TileProvider(
        "google",
        "https://mt1.google.com/vt/lyrs=s&x={x}&y={y}&z={z}",
        "&copy; Google Maps",
    ),
    "mapbox": TileProvider(
        "mapbox",
        "https://api.mapbox.com/styles/v1/mapbox/satellite-v9/tiles/{z}/{x}/{y}?access_token={key}",
        "&copy; Mapbox",
        tile_size=512,
        zoom_offset=-1,
        needs_key=True,
    ),
}


def get_provider(name: str) -> TileProvider:
    try:
        return TILE_PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unknown tile provider: {name}. Choose from {', '.join(TILE_PROVIDERS)}.") from None


def check_provider(name: str, api_key: str = "", timeout: float = 10.0) -> dict:
    """Fetch the zoom-0 tile to confirm the provider answers (and accepts the key)."""
    provider = get_provider(name)
    if provider.needs_key and not api_key:
        return {"ok": False, "error": f"{provider.name} requires an API key."}

    url = provider.url(0, 0, 0, api_key=api_key)
    try:
        resp = requests.get(url, timeout=timeout, headers={"User-Agent": "map-previz-export/1.0"})
    except requests.RequestException as exc:
        return {"ok": False, "error": f"Network error: {exc}"}

    if resp.status_code == 200 and resp.headers.get("content-type", "").startswith("image/"):
        return {"ok": True, "message": f"{provider.name} tiles reachable."}
    if resp.status_code in (401, 403):
        return {"ok": False, "error": f"{provider.name} rejected the request (HTTP {resp.status_code}). Check the API key."}
    return {"ok": False, "error": f"Tile server error ({resp.status_code}): {resp.text[:200]}"}
