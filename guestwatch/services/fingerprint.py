"""Device fingerprint derivation for anonymous guests.

Builds a DeviceSignature from environment attributes and folds it, together
with a canvas rendering checksum, into a short hexadecimal FingerprintHash.

The hash is a 32-bit rolling hash, bit-compatible with the browser client
(``hash = ((hash << 5) - hash) + charCode`` over UTF-16 code units, kept to
signed 32-bit after every step). It is an identification heuristic for
recognising returning visitors. It is NOT collision resistant and is NOT a
security control: do not swap in a cryptographic hash and do not use it to
authorize anything.
"""

import base64
import io
import locale
import logging
import os
import platform
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

FIELD_DELIMITER = "|"
UNKNOWN = "unknown"

NO_CANVAS = "no-canvas"
CANVAS_ERROR = "canvas-error"

CANVAS_WIDTH = 200
CANVAS_HEIGHT = 50
CANVAS_TEXT = "Sin City Guest"

# A renderer returns a ``data:`` URL of the drawn bitmap, or None when no
# drawing surface is available.
CanvasRenderer = Callable[[], str | None]


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def rolling_hash(text: str) -> str:
    """Hash a string into at least 8 lowercase hex digits.

    Args:
        text: Input string.

    Returns:
        ``abs(hash)`` in hexadecimal, zero-padded to 8 digits.
    """
    h = 0
    # Lone surrogates are kept as single code units, like charCodeAt
    data = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = _to_int32((h << 5) - h + unit)
    return format(abs(h), "08x")


def js_string(value: Any) -> str:
    """Render a value the way JavaScript string coercion would."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _text(value: Any) -> str:
    """Coerce a reported attribute to a string; missing becomes empty."""
    if value is None or value is False:
        return ""
    return js_string(value)


def _number(value: Any, kind: type = int) -> Any:
    """Coerce a reported numeric hint, or None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = kind(float(value)) if kind is int else kind(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def pillow_canvas_renderer() -> str:
    """Draw the fixed reference image and return it as a PNG data URL."""
    image = Image.new("RGBA", (CANVAS_WIDTH, CANVAS_HEIGHT), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    draw.rectangle((125, 1, 186, 20), fill="#ff6600")
    draw.text((2, 15), CANVAS_TEXT, fill="#006699", font=ImageFont.load_default())

    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def canvas_checksum(renderer: CanvasRenderer | None) -> str:
    """Hash the canvas rendering, substituting sentinels on failure.

    Never raises: a fingerprint must always be producible.
    """
    if renderer is None:
        return NO_CANVAS
    try:
        data_url = renderer()
    except Exception as e:
        logger.debug(f"Canvas rendering failed: {e}")
        return CANVAS_ERROR
    if not data_url:
        return NO_CANVAS
    return rolling_hash(data_url)


@dataclass
class DeviceEnvironment:
    """Raw environment attributes a fingerprint is derived from.

    In the browser these come from ``navigator`` and ``screen``. Python
    clients inspect their host with ``detect_local()``; the server rebuilds the
    environment a client reported with ``from_device_info()``.
    """

    user_agent: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 24
    timezone: str = ""
    language: str = ""
    platform: str | None = None
    touch_support: bool = False
    device_memory: float | None = None
    hardware_concurrency: int | None = None
    canvas_renderer: CanvasRenderer | None = field(default=None, repr=False, compare=False)

    @classmethod
    def detect_local(cls, canvas_renderer: CanvasRenderer | None = pillow_canvas_renderer) -> "DeviceEnvironment":
        """Read the attributes of the machine this process runs on.

        The terminal geometry stands in for the screen.
        """
        size = shutil.get_terminal_size()
        lang, _ = locale.getlocale()
        return cls(
            user_agent=f"guestwatch/{platform.python_implementation()} {platform.python_version()} ({platform.system()} {platform.release()})",
            screen_width=size.columns,
            screen_height=size.lines,
            timezone=time.tzname[0] if time.tzname else "",
            language=(lang or "").replace("_", "-"),
            platform=platform.machine() or None,
            hardware_concurrency=os.cpu_count(),
            canvas_renderer=canvas_renderer,
        )

    @classmethod
    def from_device_info(cls, info: dict[str, Any]) -> "DeviceEnvironment":
        """Rebuild an environment from a reported ``device_info`` dict.

        Accepts the browser client's camelCase keys. A ``screen`` string of
        the form ``WxHxD`` is split back into its parts.

        Every attribute is coerced: unusable values fall back to empty
        strings, zero or None instead of raising.
        """
        parts = _text(info.get("screen")).split("x")
        width = _number(parts[0]) if len(parts) >= 2 else None
        height = _number(parts[1]) if len(parts) >= 2 else None

        return cls(
            user_agent=_text(info.get("userAgent")),
            screen_width=width or 0,
            screen_height=height or 0,
            color_depth=_number(info.get("colorDepth")) or 0,
            timezone=_text(info.get("timezone")),
            language=_text(info.get("language")),
            platform=_text(info.get("platform")) or None,
            touch_support=bool(info.get("touchSupport", False)),
            device_memory=_number(info.get("deviceMemory"), float),
            hardware_concurrency=_number(info.get("hardwareConcurrency")),
        )


@dataclass(frozen=True)
class DeviceSignature:
    """Ordered tuple of environment attributes plus the canvas checksum."""

    user_agent: str
    screen: str
    timezone: str
    language: str
    platform: str
    color_depth: int
    touch_support: bool
    device_memory: float | None
    hardware_concurrency: int | None
    canvas: str

    def fields(self) -> list[str]:
        """String fields in hashing order."""
        return [
            self.user_agent,
            self.screen,
            self.timezone,
            self.language,
            self.platform,
            js_string(self.color_depth),
            js_string(self.touch_support),
            js_string(self.device_memory) if self.device_memory is not None else UNKNOWN,
            js_string(self.hardware_concurrency) if self.hardware_concurrency is not None else UNKNOWN,
            self.canvas,
        ]

    def device_info(self) -> dict[str, Any]:
        """Attributes as stored on the guest record (camelCase, no canvas)."""
        return {
            "userAgent": self.user_agent,
            "screen": self.screen,
            "timezone": self.timezone,
            "language": self.language,
            "platform": self.platform,
            "colorDepth": self.color_depth,
            "touchSupport": self.touch_support,
            "deviceMemory": self.device_memory,
            "hardwareConcurrency": self.hardware_concurrency,
        }


@dataclass(frozen=True)
class Fingerprint:
    """A DeviceSignature and the hash derived from it."""

    signature: DeviceSignature
    hash: str


def build_signature(env: DeviceEnvironment, canvas: str | None = None) -> DeviceSignature:
    """Build the signature for an environment.

    Args:
        env: Environment attributes.
        canvas: Precomputed canvas checksum. When omitted it is computed
            from ``env.canvas_renderer``.
    """
    return DeviceSignature(
        user_agent=_text(env.user_agent),
        screen=f"{env.screen_width}x{env.screen_height}x{env.color_depth}",
        timezone=_text(env.timezone),
        language=_text(env.language),
        platform=_text(env.platform) or UNKNOWN,
        color_depth=env.color_depth,
        touch_support=env.touch_support,
        device_memory=env.device_memory or None,
        hardware_concurrency=env.hardware_concurrency or None,
        canvas=canvas if canvas is not None else canvas_checksum(env.canvas_renderer),
    )


def derive_fingerprint(env: DeviceEnvironment, canvas: str | None = None) -> Fingerprint:
    """Derive the fingerprint for an environment. Never raises."""
    signature = build_signature(env, canvas)
    return Fingerprint(
        signature=signature,
        hash=rolling_hash(FIELD_DELIMITER.join(signature.fields())),
    )
