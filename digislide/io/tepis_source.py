"""
Remote slides served by a TEPIS image server.

The client owns one httpx session; the server's `.AuthCookie` is kept in the
session's cookie jar after `authenticate()`. Several TepisSource objects (one
per image) can share a client.

Usage:
    with TepisClient("https://tepis.example.org/tepis") as client:
        client.authenticate("user", "secret")
        source = client.open("1234")
        metadata = source.load_metadata()
"""

import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional, Union

import httpx
import numpy as np

from digislide.errors import BackendFailure, MalformedResponse
from digislide.io.metadata import PyramidMetadata
from digislide.io.source import AssociatedImageKind, ImageFormat, Unit, decode_image_bytes
from digislide.utils.config import DEFAULT_CONFIG
from digislide.utils.logging import get_logger

logger = get_logger(__name__)

AUTH_COOKIE = ".AuthCookie"
LOGIN_OK = 1


def _local(tag: str) -> str:
    """Tag name without namespace, lower-cased."""
    return tag.rsplit('}', 1)[-1].lower()


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    name = name.lower()
    for child in elem:
        if _local(child.tag) == name:
            return child
    return None


def _descendant(elem: ET.Element, name: str) -> Optional[ET.Element]:
    name = name.lower()
    for node in elem.iter():
        if _local(node.tag) == name:
            return node
    return None


def _pair(text: Optional[str], name: str):
    """Parse a "a, b" string into a float pair."""
    parts = [p for p in re.split(r'[,\s;]+', (text or '').strip()) if p]
    if len(parts) != 2:
        raise MalformedResponse(f"Expected a pair for {name}, got {text!r}",
                                operation="load_metadata", parameter=name)
    try:
        return float(parts[0]), float(parts[1])
    except ValueError as e:
        raise MalformedResponse(f"Non-numeric {name}: {text!r}",
                                operation="load_metadata", parameter=name) from e


def _bool(text: Optional[str]) -> bool:
    return (text or '').strip().lower() in ('true', '1')


def parse_metadata_xml(payload: Union[bytes, str]) -> PyramidMetadata:
    """
    Build PyramidMetadata from the server's image metadata document.

    Expected structure (element names matched case-insensitively, namespaces
    ignored)::

        <imageMetadata>
          <pixelMetadata>
            <numberOfLevels>3</numberOfLevels>
            <levels>
              <pixelLevelMetadata>
                <pixelSize>4000, 3000</pixelSize>
                <physicalSpacing>0.00025, 0.00025</physicalSpacing>
                <physicalOrigin>0, 0</physicalOrigin>
                <scanFactor>40</scanFactor>
                <isNativeLevel>true</isNativeLevel>
                <isLossyCompressed>true</isLossyCompressed>
                <tileSize>256, 256</tileSize>
              </pixelLevelMetadata>
              ...

    Raises:
        MalformedResponse: If the document is not parseable or incomplete
    """
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise MalformedResponse(f"Metadata is not valid XML: {e}",
                                operation="load_metadata") from e

    pixel_meta = _descendant(root, 'pixelMetadata')
    levels_elem = _descendant(pixel_meta, 'levels') if pixel_meta is not None else None
    if levels_elem is None:
        raise MalformedResponse("Metadata has no pixel level list", operation="load_metadata")
    levels = [e for e in levels_elem if _local(e.tag) == 'pixellevelmetadata']

    count_elem = _child(pixel_meta, 'numberOfLevels')
    level_count = int(count_elem.text) if count_elem is not None else len(levels)
    if level_count != len(levels):
        raise MalformedResponse(
            f"numberOfLevels is {level_count} but {len(levels)} levels are listed",
            operation="load_metadata", parameter="numberOfLevels",
        )

    def text(level_elem, name):
        node = _child(level_elem, name)
        return node.text if node is not None else None

    fields: Dict[str, Any] = {
        'pixel_size': [], 'physical_spacing': [], 'physical_origin': [],
        'tile_size': [], 'scan_factor': [], 'is_native_level': [], 'is_lossy_compressed': [],
    }
    for level_elem in levels:
        fields['pixel_size'].append(_pair(text(level_elem, 'pixelSize'), 'pixelSize'))
        fields['physical_spacing'].append(
            _pair(text(level_elem, 'physicalSpacing'), 'physicalSpacing'))
        origin = text(level_elem, 'physicalOrigin')
        fields['physical_origin'].append(_pair(origin, 'physicalOrigin') if origin else None)
        tile = text(level_elem, 'tileSize')
        fields['tile_size'].append(_pair(tile, 'tileSize') if tile else None)
        scan = text(level_elem, 'scanFactor')
        fields['scan_factor'].append(float(scan) if scan else None)
        fields['is_native_level'].append(_bool(text(level_elem, 'isNativeLevel')))
        fields['is_lossy_compressed'].append(_bool(text(level_elem, 'isLossyCompressed')))

    # Optional per-level fields are kept only when every level has them
    for name in ('physical_origin', 'scan_factor'):
        if any(v is None for v in fields[name]):
            fields[name] = None
    if all(t is None for t in fields['tile_size']):
        fields['tile_size'] = None

    return PyramidMetadata(level_count=level_count, **fields)


class TepisClient:
    """
    Session with a TEPIS image server.

    Args:
        base_url: Server root, e.g. "https://host/tepis"
        timeout: Request timeout in seconds
        verify: Verify TLS certificates
        transport: Custom httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_CONFIG["tepis"]["timeout_s"],
        verify: bool = DEFAULT_CONFIG["tepis"]["verify_ssl"],
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/') + '/'
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout,
                                   verify=verify, transport=transport)

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def is_authenticated(self) -> bool:
        return self.client.cookies.get(AUTH_COOKIE) is not None

    def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        logger.debug("%s %s %s", method, path, kwargs.get('params', ''))
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendFailure(
                f"Server returned {e.response.status_code} for {path}",
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            raise BackendFailure(f"Request to {path} failed: {e}", operation=operation) from e
        return response

    def authenticate(self, username: str, password: str) -> None:
        """
        Log in; the session cookie is kept for later requests.

        Raises:
            BackendFailure: Transport error or the server rejected the credentials
        """
        response = self._request(
            "POST", "AccessService/Login", "authenticate",
            data={"username": username, "password": password},
            headers={"Accept": "application/xml"},
        )
        try:
            status = int(ET.fromstring(response.content).text.strip())
        except (ET.ParseError, AttributeError, ValueError) as e:
            raise MalformedResponse(f"Unexpected login response: {response.text[:200]!r}",
                                    operation="authenticate") from e
        if status != LOGIN_OK:
            raise BackendFailure("Authentication failed", operation="authenticate",
                                 parameter="username")
        logger.info("Authenticated to %s as %s", self.base_url, username)

    def open(self, image_id: str) -> "TepisSource":
        """SlideSource bound to one server image."""
        return TepisSource(self, image_id)

    @staticmethod
    def _format_params(image_format: Optional[ImageFormat], quality: Optional[int]) -> dict:
        params = {}
        if image_format is not None:
            params["format"] = ImageFormat.parse(image_format).value
        if quality is not None:
            params["quality"] = int(quality)
        return params

    def get_metadata(self, image_id: str) -> PyramidMetadata:
        response = self._request("GET", f"ImageService/image/{image_id}/metadata",
                                 "load_metadata", headers={"Accept": "application/xml"})
        return parse_metadata_xml(response.content)

    def get_pixel_data(self, image_id: str, x, y, width, height, level: int,
                       unit: Unit = Unit.PIXEL, image_format: Optional[ImageFormat] = None,
                       quality: Optional[int] = None) -> bytes:
        params = {"x": x, "y": y, "width": width, "height": height,
                  "level": level, "unit": Unit.parse(unit).value}
        params.update(self._format_params(image_format, quality))
        return self._request("GET", f"ImageService/image/{image_id}/pixeldata",
                             "fetch_region", params=params).content

    def get_tiled_pixel_data(self, image_id: str, col: int, row: int, level: int,
                             image_format: Optional[ImageFormat] = None,
                             quality: Optional[int] = None) -> bytes:
        params = {"row": row, "col": col, "dir": level}
        params.update(self._format_params(image_format, quality))
        return self._request("GET", f"ImageService/tiledimage/{image_id}/pixeldata",
                             "fetch_tile", params=params).content

    def get_associated_image(self, image_id: str, kind: AssociatedImageKind,
                             image_format: Optional[ImageFormat] = None,
                             quality: Optional[int] = None) -> bytes:
        kind = AssociatedImageKind.parse(kind)
        return self._request("GET", f"ImageService/image/{image_id}/{kind.value}",
                             "fetch_associated",
                             params=self._format_params(image_format, quality)).content


class TepisSource:
    """
    SlideSource for one image on a TEPIS server.

    Args:
        client: Authenticated TepisClient (caller-owned)
        image_id: Server image identifier
        quality: Encoding quality sent with explicit format requests
    """

    def __init__(self, client: TepisClient, image_id: str,
                 quality: Optional[int] = DEFAULT_CONFIG["tepis"]["default_quality"]):
        self.client = client
        self.image_id = str(image_id)
        self.quality = quality

    def load_metadata(self) -> PyramidMetadata:
        return self.client.get_metadata(self.image_id)

    def fetch_region(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        level: int,
        unit: Unit = Unit.PIXEL,
        image_format: Optional[ImageFormat] = None,
    ) -> np.ndarray:
        data = self.client.get_pixel_data(self.image_id, x, y, width, height, level,
                                          unit, image_format, self.quality)
        return decode_image_bytes(data, "fetch_region")

    def fetch_tile(self, col: int, row: int, level: int,
                   image_format: Optional[ImageFormat] = None) -> np.ndarray:
        data = self.client.get_tiled_pixel_data(self.image_id, col, row, level,
                                                image_format, self.quality)
        return decode_image_bytes(data, "fetch_tile")

    def fetch_associated(self, kind: AssociatedImageKind,
                         image_format: Optional[ImageFormat] = None) -> np.ndarray:
        data = self.client.get_associated_image(self.image_id, kind, image_format, self.quality)
        return decode_image_bytes(data, "fetch_associated")

    def __repr__(self) -> str:
        return f"TepisSource('{self.image_id}' @ {self.client.base_url})"
