"""Message content conversion between QQ elements and Matrix events."""

from qqbridge.convert.from_matrix import MatrixToQQConverter, build_location_card, parse_geo_uri
from qqbridge.convert.from_qq import ConvertedMessage, QQToMatrixConverter, parse_location_card, render_light_app

__all__ = [
    "ConvertedMessage",
    "MatrixToQQConverter",
    "QQToMatrixConverter",
    "build_location_card",
    "parse_geo_uri",
    "parse_location_card",
    "render_light_app",
]
