"""Interchangeable ways of reading the pixels of an image.

| API | Name | Raw pixels | Requirement |
|-----|------|------------|-------------|
| `MsPixelBufferAPI` | Pixel Buffer Microservice | yes | server microservice |
| `GatewayAPI` | Ice | yes | `omero-py`, login |
| `WebAPI` | Web | no (rendered RGB) | none |
"""

from yaomero.pixelapis._base import (
    PixelAPI,
    PixelApiReader,
    compose_channels,
    decode_channel,
    reverse_level,
)
from yaomero.pixelapis._gateway import GatewayAPI, GatewayReader
from yaomero.pixelapis._ms_pixel_buffer import MsPixelBufferAPI, MsPixelBufferReader
from yaomero.pixelapis._registry import PixelAPIRegistry
from yaomero.pixelapis._web import WebAPI, WebReader

__all__ = [
    "GatewayAPI",
    "GatewayReader",
    "MsPixelBufferAPI",
    "MsPixelBufferReader",
    "PixelAPI",
    "PixelAPIRegistry",
    "PixelApiReader",
    "WebAPI",
    "WebReader",
    "compose_channels",
    "decode_channel",
    "reverse_level",
]
