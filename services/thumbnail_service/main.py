import os
import argparse
import asyncio
import base64
import io
import json
import logging
import math
import time
import uuid
from functools import lru_cache
from pathlib import Path
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import aiofiles
import boto3
import numpy as np
import openai
from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from jinja2 import Template
from openai import AsyncOpenAI
from PIL import Image, ImageColor, ImageDraw, ImageEnhance, ImageFilter, ImageFont
from pydantic import BaseModel, Field, ValidationError, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_DIR = Path(__file__).resolve().parent

# Storage config: S3 (or MinIO) for deployments, local static files for dev/testing
STORAGE_MODE = os.getenv('STORAGE_MODE', 'local').strip().lower()  # 's3' or 'local'
STORAGE_DIR = Path((os.getenv('STORAGE_DIR', str(SERVICE_DIR / 'storage'))).strip()).resolve()
STORAGE_DIR.mkdir(parents=True, exist_ok=True)
PUBLIC_BASE_URL = os.getenv('PUBLIC_BASE_URL', 'http://localhost:8010').rstrip('/')
OUTPUTS_BUCKET = os.getenv('S3_BUCKET_OUTPUTS', 'thumbnails')
S3_REGION = os.getenv('S3_REGION', 'us-east-1').strip() or 'us-east-1'

# Streaming upload defaults (tunable via env)
UPLOAD_MAX_MB = int(os.getenv("UPLOAD_MAX_MB", "20"))  # hard cap on accepted upload size
UPLOAD_CHUNK_KB = int(os.getenv("UPLOAD_CHUNK_KB", "512"))  # chunk size for reading the upload
UPLOAD_READ_TIMEOUT_S = float(os.getenv("UPLOAD_READ_TIMEOUT_S", "10"))  # per-chunk read timeout

PROCESS_TIMEOUT_S = float(os.getenv("PROCESS_TIMEOUT_S", "60"))  # render timeout

# Instruction model
INSTRUCTION_MODEL = os.getenv("INSTRUCTION_MODEL", "gpt-4o-mini")
INSTRUCTION_TEMPERATURE = float(os.getenv("INSTRUCTION_TEMPERATURE", "0.4"))
INSTRUCTION_ATTACH_IMAGE = (os.getenv("INSTRUCTION_ATTACH_IMAGE", "false").strip().lower() in ("1", "true", "yes", "on"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_DELAY_S = float(os.getenv("LLM_RETRY_DELAY_S", "1.0"))

# Fonts
FONTS_DIR = Path(os.getenv("FONTS_DIR", str(SERVICE_DIR / 'fonts'))).resolve()
EMOJI_FONT = os.getenv("EMOJI_FONT", "NotoColorEmoji.ttf")

# Credentials are read once; a missing key is a startup error
_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
if not _OPENAI_API_KEY:
    raise RuntimeError("OPENAI_API_KEY environment variable is not set")
client = AsyncOpenAI(api_key=_OPENAI_API_KEY)

s3_client = None
if STORAGE_MODE == 's3':
    _S3_ACCESS_KEY = os.getenv('S3_ACCESS_KEY', '').strip()
    _S3_SECRET_KEY = os.getenv('S3_SECRET_KEY', '').strip()
    if not _S3_ACCESS_KEY or not _S3_SECRET_KEY:
        raise RuntimeError("S3_ACCESS_KEY and S3_SECRET_KEY must be set when STORAGE_MODE=s3")
    s3_client = boto3.client(
        's3',
        endpoint_url=os.getenv('S3_ENDPOINT') or None,
        aws_access_key_id=_S3_ACCESS_KEY,
        aws_secret_access_key=_S3_SECRET_KEY,
        region_name=S3_REGION,
    )
elif STORAGE_MODE != 'local':
    raise RuntimeError(f"Unsupported STORAGE_MODE: {STORAGE_MODE!r} (expected 'local' or 's3')")

app = FastAPI(title="Smart Thumbnail Maker", version="1.0.0")

# CORS middleware: allow the browser upload form to call this API directly.
# Configure via CORS_ALLOW_ORIGINS env (comma-separated). Defaults are dev-friendly.
origins_env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
if not origins_env:
    allow_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8010",
        "http://127.0.0.1:8010",
    ]
else:
    allow_origins = [o.strip() for o in origins_env.split(",") if o.strip()]
# If wildcard is present, set credentials False and pass ["*"] per Starlette rules
use_wildcard = "*" in allow_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if use_wildcard else allow_origins,
    allow_credentials=False if use_wildcard else True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Locally stored thumbnails are served from /static
app.mount("/static", StaticFiles(directory=str(STORAGE_DIR)), name="static")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render every HTTP error as {"error": message}."""
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed form fields are client errors: 400 {"error": message}."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "request"
    message = f"Invalid {field}: {first.get('msg', 'invalid value')}"
    logger.warning(f"Rejecting request: {message}")
    return JSONResponse(status_code=400, content={"error": message})


class InstructionError(Exception):
    """The LLM reply could not be turned into an ImageProcessingInstruction."""


class StorageError(Exception):
    """Uploading the rendered thumbnail failed."""


# Pydantic models: LLM output contract
def _float_or_none(v: Any) -> Optional[float]:
    """Numbers and numeric strings pass through; anything else becomes None."""
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None

class Size(BaseModel):
    width: int
    height: int

class BaseSpec(BaseModel):
    # The canvas is fixed, so the requested size is informational only
    size: Optional[Size] = None
    format: Optional[str] = "jpg"

    @field_validator("size", mode="before")
    @classmethod
    def _loose_size(cls, v: Any) -> Any:
        if isinstance(v, Size) or (isinstance(v, dict) and {"width", "height"} <= v.keys()):
            return v
        return None

    @field_validator("format", mode="before")
    @classmethod
    def _loose_format(cls, v: Any) -> Any:
        return v if isinstance(v, str) else None

class FilterSpec(BaseModel):
    type: str
    value: Optional[float] = None

    @field_validator("value", mode="before")
    @classmethod
    def _loose_value(cls, v: Any) -> Optional[float]:
        return _float_or_none(v)

class Position(BaseModel):
    x: Optional[float] = None
    y: Optional[float] = None

    @field_validator("x", "y", mode="before")
    @classmethod
    def _loose_coord(cls, v: Any) -> Optional[float]:
        return _float_or_none(v)

class Shadow(BaseModel):
    color: str = "rgba(0,0,0,0.5)"
    blur: float = 10
    offset_x: float = Field(5, alias="offsetX")
    offset_y: float = Field(5, alias="offsetY")
    model_config = {"populate_by_name": True}

class OverlayStyle(BaseModel):
    font: Optional[str] = None
    size: Optional[float] = None
    color: Optional[str] = None
    outline: Optional[str] = None
    outline_width: Optional[float] = Field(None, alias="outlineWidth")
    weight: Optional[str] = None
    alignment: Optional[str] = None
    shadow: Optional[Shadow] = None
    model_config = {"populate_by_name": True}

    @field_validator("size", "outline_width", mode="before")
    @classmethod
    def _loose_number(cls, v: Any) -> Optional[float]:
        return _float_or_none(v)

    @field_validator("shadow", mode="before")
    @classmethod
    def _loose_shadow(cls, v: Any) -> Any:
        # always replaced by the house shadow during mapping
        if isinstance(v, Shadow):
            return v
        try:
            return Shadow.model_validate(v)
        except ValidationError:
            return None

class Overlay(BaseModel):
    type: str = "text"
    content: str = ""
    position: Position = Field(default_factory=Position)
    style: OverlayStyle = Field(default_factory=OverlayStyle)

    @field_validator("content", mode="before")
    @classmethod
    def _none_as_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("position", "style", mode="before")
    @classmethod
    def _none_as_default(cls, v: Any) -> Any:
        return {} if v is None else v

class Enhancements(BaseModel):
    filters: List[FilterSpec] = Field(default_factory=list)
    overlays: List[Overlay] = Field(default_factory=list)

    @field_validator("filters", "overlays", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

class ImageProcessingInstruction(BaseModel):
    base: BaseSpec
    enhancements: Enhancements

# Locally derived rendering configuration
class Gradient(BaseModel):
    colors: List[str]
    angle: float = 45

class Background(BaseModel):
    gradient: Gradient
    opacity: float = 0.7

class Effects(BaseModel):
    vignette_strength: float = 0.3
    noise_opacity: float = 0.02

class ThumbnailConfig(BaseModel):
    base: BaseSpec
    background: Background
    filters: List[FilterSpec]
    overlays: List[Overlay]
    effects: Effects = Field(default_factory=Effects)

# Output records
class ImageMetadata(BaseModel):
    width: int
    height: int
    format: str
    size: int

class ProcessedImage(BaseModel):
    url: str
    metadata: ImageMetadata
    instructions: ImageProcessingInstruction

class FilterSettings(BaseModel):
    """Upload-form toggles: which filter types to keep and whether to ask for an emoji."""
    contrast: bool = False
    brightness: bool = False
    saturation: bool = False
    add_emoji: bool = Field(False, alias="addEmoji")
    model_config = {"populate_by_name": True}


# Fixed canvas and cosmetic defaults
THUMB_W = 1280
THUMB_H = 720
POSITION_PADDING = 100
FILTER_MIN = 0.9
FILTER_MAX = 1.1
FILTER_TYPES = ("contrast", "brightness", "saturation")
MAX_TEXT_OVERLAYS = 3
MAX_EMOJI_OVERLAYS = 2
DEFAULT_FONT = "DejaVuSans-Bold.ttf"
DEFAULT_FONT_SIZE = 48
DEFAULT_OUTLINE_WIDTH = 2
MAX_OUTLINE_WIDTH = 20
GRADIENT_COLORS = ["#FF6B6B", "#4ECDC4"]
DEFAULT_SHADOW = Shadow(color="rgba(0,0,0,0.5)", blur=10, offset_x=5, offset_y=5)
JPEG_QUALITY = 95
EMOJI_BITMAP_SIZE = 109  # the only size colour bitmap emoji fonts load at

PROMPT_TEMPLATE = Template("""
You are a professional thumbnail design assistant. Analyze the user's request and generate processing instructions in this exact JSON format:

{
  "base": {
    "size": {
      "width": number,
      "height": number
    },
    "format": "jpg" or "png"
  },
  "enhancements": {
    "filters": [
      {
        "type": "contrast" | "brightness" | "saturation",
        "value": number between 0.9 and 1.1
      }
    ],
    "overlays": [
      {
        "type": "text" | "emoji",
        "content": "string",
        "position": {
          "x": number (must be between {{ padding }} and {{ canvas_width - padding }} for padding),
          "y": number (must be between {{ padding }} and {{ canvas_height - padding }} for padding)
        },
        "style": {
          "font": "string",
          "size": number between 24 and 72 or user request,
          "color": "hex_code",
          "outline": "hex_code (optional)"
        }
      }
    ]
  }
}

Rules:
1. All measurements should be in pixels; overlay positions refer to the {{ canvas_width }}x{{ canvas_height }} thumbnail canvas
2. Maximum {{ max_text }} text overlays
3. Font sizes between 24 and 72 but User can request any font size
4. Strict filter limits:
   - Saturation: max 1.1 (10% increase)
   - Brightness: between 0.9 and 1.1 (±10%)
   - Contrast: between 0.9 and 1.1 (±10%)
5. Text positioning must include padding:
   - Keep x positions between {{ padding }} and width-{{ padding }} pixels
   - Keep y positions between {{ padding }} and height-{{ padding }} pixels
6. Only output valid JSON, no additional text
7. User can specify the font family, font color, font outline color, font content
{%- if add_emoji %}
8. Add exactly one overlay of type "emoji" whose content is a single emoji that fits the request
{%- else %}
8. Do not add overlays of type "emoji"
{%- endif %}

User Request: {{ user_input }}
Image Metadata: {{ width }}x{{ height }} {{ format }}
""")

RETRYABLE_MARKERS = ("503 Service Unavailable", "overloaded")

T = TypeVar("T")


# Prompt construction and LLM call
def build_prompt(user_instruction: str, width: int, height: int, fmt: str, *, add_emoji: bool = False) -> str:
    return PROMPT_TEMPLATE.render(
        user_input=user_instruction,
        width=width,
        height=height,
        format=fmt,
        canvas_width=THUMB_W,
        canvas_height=THUMB_H,
        padding=POSITION_PADDING,
        max_text=MAX_TEXT_OVERLAYS,
        add_emoji=add_emoji,
    )

def is_retryable_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(marker in message for marker in RETRYABLE_MARKERS)

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = LLM_MAX_RETRIES,
    initial_delay_s: float = LLM_RETRY_DELAY_S,
) -> T:
    """Run ``operation``, retrying transient overload errors with doubling delays.

    Any other error propagates on the first failure. After ``max_retries``
    failed attempts the last error is raised.
    """
    delay = initial_delay_s
    last_error: Optional[BaseException] = None
    for attempt in range(max(1, max_retries)):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable_error(e):
                raise
            last_error = e
            if attempt + 1 >= max_retries:
                break
            logger.warning(f"LLM attempt {attempt + 1}/{max_retries} failed ({e}); retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay *= 2
    raise last_error if last_error is not None else RuntimeError("Max retries exceeded")

def parse_instruction_json(content: str) -> ImageProcessingInstruction:
    """Parse the model reply, tolerating prose or code fences around the JSON object."""
    text = (content or "").strip()
    parsed: Any = None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            try:
                parsed = json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                parsed = None
    if not isinstance(parsed, dict):
        raise InstructionError("LLM reply is not a JSON object")
    missing = [key for key in ("base", "enhancements") if key not in parsed]
    if missing:
        raise InstructionError(f"LLM reply is missing required keys: {', '.join(missing)}")
    try:
        return ImageProcessingInstruction.model_validate(parsed)
    except ValidationError as e:
        raise InstructionError(f"LLM reply does not match the instruction schema: {e}") from e

def _image_data_url(image_bytes: bytes, fmt: str) -> str:
    mime = "image/png" if fmt.lower() == "png" else f"image/{'jpeg' if fmt.lower() in ('jpg', 'jpeg') else fmt.lower()}"
    return f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"

async def generate_image_instructions(
    image_bytes: bytes,
    user_instruction: str,
    metadata: Dict[str, Any],
    *,
    add_emoji: bool = False,
) -> ImageProcessingInstruction:
    """Ask the instruction model how to render the thumbnail."""
    prompt = build_prompt(
        user_instruction,
        int(metadata.get("width") or 0),
        int(metadata.get("height") or 0),
        str(metadata.get("format") or "jpeg"),
        add_emoji=add_emoji,
    )
    if INSTRUCTION_ATTACH_IMAGE:
        user_content: Any = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": _image_data_url(image_bytes, str(metadata.get("format") or "jpeg"))}},
        ]
    else:
        user_content = prompt

    async def _call() -> ImageProcessingInstruction:
        chat_args: Dict[str, Any] = {
            "model": INSTRUCTION_MODEL,
            "messages": [
                {"role": "system", "content": "You are a thumbnail design assistant who outputs strict JSON only."},
                {"role": "user", "content": user_content},
            ],
        }
        # Some models (e.g., gpt-5 family) only support default temperature; omit to avoid 400s
        if not str(INSTRUCTION_MODEL).strip().lower().startswith("gpt-5"):
            chat_args["temperature"] = INSTRUCTION_TEMPERATURE
        response = await client.chat.completions.create(**chat_args)
        content = (response.choices[0].message.content or "").strip()
        return parse_instruction_json(content)

    t0 = perf_counter()
    instruction = await retry_with_backoff(_call)
    logger.info(
        f"instructions: {len(instruction.enhancements.filters)} filter(s), "
        f"{len(instruction.enhancements.overlays)} overlay(s) in {perf_counter() - t0:.2f}s"
    )
    return instruction

def apply_filter_settings(instruction: ImageProcessingInstruction, settings: Optional[FilterSettings]) -> ImageProcessingInstruction:
    """Drop filters the user switched off, and emoji overlays unless requested."""
    if settings is None:
        return instruction
    enabled = {name for name in FILTER_TYPES if getattr(settings, name)}
    filters = [f for f in instruction.enhancements.filters if f.type.strip().lower() in enabled]
    overlays = [
        o for o in instruction.enhancements.overlays
        if settings.add_emoji or o.type.strip().lower() != "emoji"
    ]
    return instruction.model_copy(update={"enhancements": Enhancements(filters=filters, overlays=overlays)})


# Configuration mapping
def _clamp_float(x: Any, lo: float, hi: float, default: Optional[float] = None) -> Optional[float]:
    try:
        v = float(x)
        if v != v or v in (float("inf"), float("-inf")):
            return default
        return max(lo, min(hi, v))
    except (TypeError, ValueError):
        return default

def convert_to_thumbnail_config(instruction: ImageProcessingInstruction) -> ThumbnailConfig:
    """Map the LLM instruction onto the fixed 1280x720 layout.

    Filter values are clamped to [0.9, 1.1], overlay positions to the padded
    interior, and shadow/alignment are always the house defaults.
    """
    width, height = THUMB_W, THUMB_H

    filters: List[FilterSpec] = []
    for f in instruction.enhancements.filters:
        ftype = f.type.strip().lower()
        if ftype not in FILTER_TYPES:
            continue
        filters.append(FilterSpec(type=ftype, value=_clamp_float(f.value, FILTER_MIN, FILTER_MAX, 1.0)))

    overlays: List[Overlay] = []
    counts = {"text": 0, "emoji": 0}
    limits = {"text": MAX_TEXT_OVERLAYS, "emoji": MAX_EMOJI_OVERLAYS}
    for o in instruction.enhancements.overlays:
        otype = o.type.strip().lower()
        if otype not in limits or not o.content.strip():
            continue
        if counts[otype] >= limits[otype]:
            continue
        counts[otype] += 1
        x = _clamp_float(o.position.x, POSITION_PADDING, width - POSITION_PADDING, width / 2)
        y = _clamp_float(o.position.y, POSITION_PADDING, height - POSITION_PADDING, height / 2)
        style = o.style.model_copy(update={
            "size": _clamp_float(o.style.size, 12, 200, DEFAULT_FONT_SIZE),
            "outline_width": _clamp_float(o.style.outline_width, 0, MAX_OUTLINE_WIDTH, None),
            "alignment": "center",
            "shadow": DEFAULT_SHADOW.model_copy(),
        })
        overlays.append(Overlay(type=otype, content=o.content, position=Position(x=x, y=y), style=style))

    fmt = (instruction.base.format or "jpg").strip().lower()
    return ThumbnailConfig(
        base=BaseSpec(size=Size(width=width, height=height), format=fmt if fmt in ("jpg", "png") else "jpg"),
        background=Background(gradient=Gradient(colors=list(GRADIENT_COLORS), angle=45), opacity=0.7),
        filters=filters,
        overlays=overlays,
        effects=Effects(vignette_strength=0.3, noise_opacity=0.02),
    )


# Rendering
def _parse_color(value: Optional[str], default: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
    """Parse hex, CSS names, rgb() and rgba() with a 0-1 alpha into an RGBA tuple."""
    if not isinstance(value, str) or not value.strip():
        return default
    s = value.strip().lower()
    if s.startswith("rgba(") and s.endswith(")"):
        parts = [p.strip() for p in s[5:-1].split(",")]
        if len(parts) == 4:
            try:
                r, g, b = (max(0, min(255, int(float(p)))) for p in parts[:3])
                a = float(parts[3])
                alpha = int(round((a if a <= 1 else a / 255) * 255))
                return (r, g, b, max(0, min(255, alpha)))
            except ValueError:
                return default
        return default
    try:
        rgb = ImageColor.getrgb(s)
    except ValueError:
        logger.warning(f"Unrecognized color {value!r}; using default")
        return default
    if len(rgb) == 4:
        return rgb  # type: ignore[return-value]
    return (rgb[0], rgb[1], rgb[2], 255)

@lru_cache(maxsize=64)
def get_font(name: Optional[str], size: int) -> ImageFont.FreeTypeFont:
    """Load a font with fallback chain: FONTS_DIR, system fonts, Pillow's default."""
    candidates: List[str] = []
    for n in (name, DEFAULT_FONT):
        if not n:
            continue
        local = FONTS_DIR / n
        candidates.extend([str(local), str(local.with_name(local.name + ".ttf")), n])
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.warning(f"Font {name!r} not found, using default")
    return ImageFont.load_default(size=size)

@lru_cache(maxsize=1)
def _emoji_font() -> Optional[ImageFont.FreeTypeFont]:
    for candidate in (str(FONTS_DIR / EMOJI_FONT), EMOJI_FONT):
        try:
            return ImageFont.truetype(candidate, EMOJI_BITMAP_SIZE)
        except OSError:
            continue
    logger.warning(f"Emoji font {EMOJI_FONT!r} not available; emoji drawn with the text font")
    return None

def _gradient_background(width: int, height: int, gradient: Gradient) -> Image.Image:
    """Linear gradient along ``gradient.angle`` with evenly spaced colour stops."""
    colors = np.array([_parse_color(c, (0, 0, 0, 255))[:3] for c in gradient.colors] or [(0, 0, 0)], dtype=np.float32)
    if len(colors) == 1:
        colors = np.vstack([colors, colors])
    theta = math.radians(gradient.angle)
    dx, dy = math.cos(theta), math.sin(theta)
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float32)
    proj = xs * dx + ys * dy
    corners = [0.0, (width - 1) * dx, (height - 1) * dy, (width - 1) * dx + (height - 1) * dy]
    lo, hi = min(corners), max(corners)
    t = (proj - lo) / max(hi - lo, 1e-6)
    stops = np.linspace(0.0, 1.0, len(colors))
    arr = np.empty((height, width, 4), dtype=np.uint8)
    for ch in range(3):
        arr[:, :, ch] = np.interp(t, stops, colors[:, ch]).astype(np.uint8)
    arr[:, :, 3] = 255
    return Image.fromarray(arr)

def _blend_source(canvas: Image.Image, source: Image.Image, alpha: float) -> Image.Image:
    """Scale the source to cover the canvas, centre it and composite at ``alpha``."""
    cw, ch = canvas.size
    aspect = source.width / max(1, source.height)
    draw_w, draw_h = cw, cw / aspect
    if draw_h < ch:
        draw_h = ch
        draw_w = ch * aspect
    draw_w, draw_h = max(1, int(round(draw_w))), max(1, int(round(draw_h)))
    resized = source.convert("RGBA").resize((draw_w, draw_h), Image.Resampling.LANCZOS)
    layer = Image.new("RGBA", (cw, ch), (0, 0, 0, 0))
    layer.paste(resized, ((cw - draw_w) // 2, (ch - draw_h) // 2))
    a = max(0.0, min(1.0, alpha))
    layer.putalpha(layer.getchannel("A").point(lambda v: int(v * a)))
    return Image.alpha_composite(canvas, layer)

def _vignette(canvas: Image.Image, strength: float) -> Image.Image:
    """Radial darkening from transparent at the centre to ``strength`` at radius = width."""
    w, h = canvas.size
    ys, xs = np.ogrid[:h, :w]
    dist = np.sqrt((xs - w / 2) ** 2 + (ys - h / 2) ** 2)
    alpha = np.clip(dist / w, 0, 1) * strength * 255
    arr = np.zeros((h, w, 4), dtype=np.uint8)
    arr[:, :, 3] = alpha.astype(np.uint8)
    return Image.alpha_composite(canvas, Image.fromarray(arr))

def _text_origin(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.FreeTypeFont, x: float, y: float,
                 alignment: str, stroke: int) -> Tuple[float, float]:
    """Top-left draw origin so the text is anchored at (x, y), vertically middle."""
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font, stroke_width=stroke)
    tw, th = right - left, bottom - top
    if alignment == "left":
        ox = x - left
    elif alignment == "right":
        ox = x - tw - left
    else:
        ox = x - tw / 2 - left
    return ox, y - th / 2 - top

def _draw_text_overlay(canvas: Image.Image, overlay: Overlay) -> Image.Image:
    style = overlay.style
    size = int(style.size or DEFAULT_FONT_SIZE)
    font = get_font(style.font, size)
    fill = _parse_color(style.color, (255, 255, 255, 255))
    outline_w = DEFAULT_OUTLINE_WIDTH if style.outline_width is None else style.outline_width
    stroke = int(outline_w) if style.outline else 0
    stroke_fill = _parse_color(style.outline, (0, 0, 0, 255)) if style.outline else None
    x, y = float(overlay.position.x or 0), float(overlay.position.y or 0)

    probe = ImageDraw.Draw(canvas)
    ox, oy = _text_origin(probe, overlay.content, font, x, y, style.alignment or "center", stroke)

    if style.shadow:
        shadow_color = _parse_color(style.shadow.color, (0, 0, 0, 128))
        shadow_layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        ImageDraw.Draw(shadow_layer).text(
            (ox + style.shadow.offset_x, oy + style.shadow.offset_y),
            overlay.content,
            font=font,
            fill=shadow_color,
            stroke_width=stroke,
            stroke_fill=shadow_color,
        )
        if style.shadow.blur > 0:
            shadow_layer = shadow_layer.filter(ImageFilter.GaussianBlur(radius=style.shadow.blur / 2))
        canvas = Image.alpha_composite(canvas, shadow_layer)

    text_layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    ImageDraw.Draw(text_layer).text(
        (ox, oy),
        overlay.content,
        font=font,
        fill=fill,
        stroke_width=stroke,
        stroke_fill=stroke_fill,
    )
    return Image.alpha_composite(canvas, text_layer)

def _draw_emoji_overlay(canvas: Image.Image, overlay: Overlay) -> Image.Image:
    font = _emoji_font()
    if font is None:
        return _draw_text_overlay(canvas, overlay)
    size = int(overlay.style.size or DEFAULT_FONT_SIZE)
    probe = ImageDraw.Draw(canvas)
    left, top, right, bottom = probe.textbbox((0, 0), overlay.content, font=font, embedded_color=True)
    glyph = Image.new("RGBA", (max(1, right - left), max(1, bottom - top)), (0, 0, 0, 0))
    ImageDraw.Draw(glyph).text((-left, -top), overlay.content, font=font, embedded_color=True)
    scale = size / max(1, glyph.height)
    glyph = glyph.resize((max(1, int(glyph.width * scale)), max(1, int(glyph.height * scale))), Image.Resampling.LANCZOS)
    x, y = float(overlay.position.x or 0), float(overlay.position.y or 0)
    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    layer.paste(glyph, (int(x - glyph.width / 2), int(y - glyph.height / 2)))
    return Image.alpha_composite(canvas, layer)

def _add_noise(image: Image.Image, opacity: float) -> Image.Image:
    """Unseeded per-pixel noise, the same offset on R, G and B."""
    arr = np.asarray(image.convert("RGB"), dtype=np.float32)
    rng = np.random.default_rng()
    noise = (rng.random((arr.shape[0], arr.shape[1], 1), dtype=np.float32) - 0.5) * opacity * 255
    return Image.fromarray(np.clip(arr + noise, 0, 255).astype(np.uint8))

def _apply_filters(image: Image.Image, filters: List[FilterSpec]) -> Image.Image:
    for f in filters:
        factor = f.value if f.value is not None else 1.0
        if f.type == "contrast":
            image = ImageEnhance.Contrast(image).enhance(factor)
        elif f.type == "brightness":
            image = ImageEnhance.Brightness(image).enhance(factor)
        elif f.type == "saturation":
            image = ImageEnhance.Color(image).enhance(factor)
    return image

def render_thumbnail(image_bytes: bytes, config: ThumbnailConfig) -> bytes:
    """Composite the thumbnail and return JPEG bytes."""
    width, height = config.base.size.width, config.base.size.height
    canvas = _gradient_background(width, height, config.background.gradient)

    with Image.open(io.BytesIO(image_bytes)) as source:
        source.load()
        canvas = _blend_source(canvas, source, 1 - config.background.opacity)

    canvas = _vignette(canvas, config.effects.vignette_strength)

    for overlay in config.overlays:
        if overlay.type == "emoji":
            canvas = _draw_emoji_overlay(canvas, overlay)
        else:
            canvas = _draw_text_overlay(canvas, overlay)

    image = _add_noise(canvas, config.effects.noise_opacity)
    image = _apply_filters(image, config.filters)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return buffer.getvalue()

def read_image_metadata(data: bytes) -> ImageMetadata:
    with Image.open(io.BytesIO(data)) as im:
        return ImageMetadata(
            width=int(im.width),
            height=int(im.height),
            format=(im.format or "").lower(),
            size=len(data),
        )


# Storage
def public_s3_base() -> str:
    """Path-style base; object URLs are {base}/{bucket}/{key}."""
    return (os.getenv('PUBLIC_S3_BASE') or os.getenv('S3_ENDPOINT') or f"https://s3.{S3_REGION}.amazonaws.com").rstrip('/')

async def _upload_bytes(bucket: str, key: str, data: bytes, content_type: str) -> str:
    """Store bytes and return their public URL."""
    if STORAGE_MODE == 'local':
        rel_path = f"{bucket}/{key}"
        file_path = STORAGE_DIR / rel_path
        file_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(file_path, 'wb') as f:
            await f.write(data)
        return f"{PUBLIC_BASE_URL}/static/{rel_path}"
    await asyncio.to_thread(
        s3_client.put_object,
        Bucket=bucket,
        Key=key,
        Body=data,
        ContentType=content_type,
    )
    return f"{public_s3_base()}/{bucket}/{key}"

async def upload_thumbnail(data: bytes, content_type: str = 'image/jpeg') -> str:
    ext = 'png' if content_type == 'image/png' else 'jpg'
    key = f"thumbnail-{uuid.uuid4().hex}.{ext}"
    try:
        url = await _upload_bytes(OUTPUTS_BUCKET, key, data, content_type)
    except Exception as e:
        logger.error(f"Upload failed for {OUTPUTS_BUCKET}/{key}: {e}")
        raise StorageError(f"Upload failed: {e}") from e
    logger.info(f"Stored thumbnail {OUTPUTS_BUCKET}/{key} ({len(data)} bytes)")
    return url


# Pipeline
async def process_image(
    image_bytes: bytes,
    user_instruction: str,
    filter_settings: Optional[FilterSettings] = None,
) -> ProcessedImage:
    """Upload -> instructions -> config -> render -> store, one linear pass."""
    t0 = perf_counter()
    source_meta = read_image_metadata(image_bytes)
    instruction = await generate_image_instructions(
        image_bytes,
        user_instruction,
        {"width": source_meta.width, "height": source_meta.height, "format": source_meta.format or "jpeg"},
        add_emoji=bool(filter_settings and filter_settings.add_emoji),
    )
    instruction = apply_filter_settings(instruction, filter_settings)
    config = convert_to_thumbnail_config(instruction)

    t1 = perf_counter()
    try:
        rendered = await asyncio.wait_for(asyncio.to_thread(render_thumbnail, image_bytes, config), timeout=PROCESS_TIMEOUT_S)
    except asyncio.TimeoutError:
        logger.error("Thumbnail rendering timed out")
        raise HTTPException(status_code=504, detail="Thumbnail rendering timed out")
    metadata = read_image_metadata(rendered)
    logger.info(f"render: {metadata.width}x{metadata.height} {metadata.format} {metadata.size} bytes in {perf_counter() - t1:.2f}s")

    url = await upload_thumbnail(rendered, 'image/jpeg')
    logger.info(f"process-image: success total_elapsed={perf_counter() - t0:.2f}s")
    return ProcessedImage(url=url, metadata=metadata, instructions=instruction)

def parse_filter_settings(raw: Optional[str]) -> Optional[FilterSettings]:
    if raw is None or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="filterSettings must be a JSON object")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="filterSettings must be a JSON object")
    try:
        return FilterSettings.model_validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid filterSettings: {e.errors()[0].get('msg', 'invalid value')}")

async def read_upload(request: Request, image: UploadFile) -> bytes:
    """Read the upload in chunks, enforcing the size cap and per-chunk timeout."""
    max_bytes = UPLOAD_MAX_MB * 1024 * 1024
    chunk_size = max(1, UPLOAD_CHUNK_KB) * 1024
    buffer = bytearray()
    while True:
        # honor client disconnects
        if await request.is_disconnected():
            logger.warning("Client disconnected during upload")
            raise HTTPException(status_code=499, detail="Client Closed Request")
        try:
            chunk = await asyncio.wait_for(image.read(chunk_size), timeout=UPLOAD_READ_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.error("Upload read timeout per-chunk")
            raise HTTPException(status_code=408, detail="Upload read timeout")
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            logger.warning(f"Upload exceeded limit: {len(buffer)} bytes > {max_bytes} bytes")
            raise HTTPException(status_code=413, detail="File too large")
    if not buffer:
        raise HTTPException(status_code=400, detail="Empty upload")
    return bytes(buffer)


# API Endpoints
@app.post("/api/process-image")
async def process_image_endpoint(
    request: Request,
    image: Optional[UploadFile] = File(None),
    instruction: Optional[str] = Form(None),
    filterSettings: Optional[str] = Form(None),
):
    """Turn an uploaded photo and a free-text instruction into a hosted thumbnail."""
    try:
        if image is None or not (instruction or "").strip():
            raise HTTPException(status_code=400, detail="Image and instruction are required")

        ctype = (image.content_type or "").lower()
        if ctype and not ctype.startswith("image/"):
            logger.warning(f"Rejecting non-image upload: content_type={ctype!r}")
            raise HTTPException(status_code=415, detail="Unsupported Media Type: expected image/*")

        settings = parse_filter_settings(filterSettings)
        image_bytes = await read_upload(request, image)
        logger.info(f"process-image: received {len(image_bytes)} bytes, instruction={instruction[:80]!r}")

        result = await process_image(image_bytes, instruction.strip(), settings)
        return {
            "thumbnailUrl": result.url,
            "metadata": result.metadata.model_dump(),
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error processing image: {e}")
        detail = str(e) or e.__class__.__name__
        raise HTTPException(status_code=500, detail=detail)

UPLOAD_FORM_TEMPLATE = Template("""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>{{ title }}</title>
  <style>
    body { font-family: system-ui, sans-serif; max-width: 760px; margin: 2rem auto; padding: 0 1rem; color: #222; }
    fieldset { border: 1px solid #ddd; border-radius: 6px; margin: 1rem 0; }
    textarea { width: 100%; min-height: 5rem; }
    #preview img { max-width: 100%; border-radius: 6px; margin-top: 1rem; }
    #error { color: #b00020; }
  </style>
</head>
<body>
  <h1>{{ title }}</h1>
  <form id="thumbnail-form" action="{{ action }}" method="post" enctype="multipart/form-data">
    <p><input type="file" name="image" accept="image/*" required> <small>max {{ max_mb }} MB</small></p>
    <p><textarea name="instruction" placeholder="Make a YouTube thumbnail about my trip to Japan" required></textarea></p>
    <fieldset>
      <legend>Filters</legend>
      {% for name, label in toggles %}
      <label><input type="checkbox" name="{{ name }}" value="true"> {{ label }}</label>
      {% endfor %}
    </fieldset>
    <button type="submit">Create thumbnail</button>
  </form>
  <p id="error"></p>
  <div id="preview"></div>
  <script>
    const form = document.getElementById("thumbnail-form");
    const toggleNames = {{ toggle_names }};
    form.addEventListener("submit", async (event) => {
      event.preventDefault();
      const data = new FormData();
      data.append("image", form.image.files[0]);
      data.append("instruction", form.instruction.value);
      const settings = {};
      for (const name of toggleNames) settings[name] = form.elements[name].checked;
      data.append("filterSettings", JSON.stringify(settings));
      document.getElementById("error").textContent = "";
      document.getElementById("preview").textContent = "Processing...";
      const resp = await fetch(form.action, { method: "POST", body: data });
      const body = await resp.json();
      if (!resp.ok) {
        document.getElementById("preview").textContent = "";
        document.getElementById("error").textContent = body.error || "Failed to process image";
        return;
      }
      const meta = body.metadata;
      document.getElementById("preview").innerHTML =
        '<img alt="thumbnail" src="' + body.thumbnailUrl + '">' +
        "<p>" + meta.width + "x" + meta.height + " " + meta.format + ", " + meta.size + " bytes - " +
        '<a href="' + body.thumbnailUrl + '" download>Download</a></p>';
    });
  </script>
</body>
</html>
""")
FORM_TOGGLES = [
    ("contrast", "Contrast"),
    ("brightness", "Brightness"),
    ("saturation", "Saturation"),
    ("addEmoji", "Add emoji"),
]

@app.get("/", response_class=HTMLResponse)
async def upload_form():
    """Browser form: photo, instruction and filter toggles, previewing the result."""
    return UPLOAD_FORM_TEMPLATE.render(
        title="Smart Thumbnail Maker",
        action="/api/process-image",
        max_mb=UPLOAD_MAX_MB,
        toggles=FORM_TOGGLES,
        toggle_names=json.dumps([name for name, _ in FORM_TOGGLES]),
    )

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "smart-thumbnail-maker",
        "instruction_model": INSTRUCTION_MODEL,
        "attach_image": bool(INSTRUCTION_ATTACH_IMAGE),
        "storage_mode": STORAGE_MODE,
        "max_retries": LLM_MAX_RETRIES,
        "openai_sdk_version": getattr(openai, "__version__", "unknown"),
    }


# Command line
async def create_thumbnail_file(image_path: Path, user_instruction: str, output_path: Optional[Path] = None) -> Tuple[Path, ImageMetadata]:
    """Render a thumbnail for a local image straight to disk, skipping storage."""
    image_bytes = image_path.read_bytes()
    source_meta = read_image_metadata(image_bytes)
    logger.info(f"Image metadata: {source_meta.width}x{source_meta.height} {source_meta.format}")
    instruction = await generate_image_instructions(
        image_bytes,
        user_instruction,
        {"width": source_meta.width, "height": source_meta.height, "format": source_meta.format or "jpeg"},
    )
    logger.info(f"Suggested settings: {instruction.model_dump_json(by_alias=True)}")
    config = convert_to_thumbnail_config(instruction)
    rendered = await asyncio.to_thread(render_thumbnail, image_bytes, config)

    if output_path is None:
        output_path = STORAGE_DIR / "processed" / f"thumbnail-{int(time.time() * 1000)}.jpg"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(output_path, 'wb') as f:
        await f.write(rendered)
    return output_path, read_image_metadata(rendered)

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Smart Thumbnail Maker")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API (default)")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8010)

    create = sub.add_parser("create", help="Create a thumbnail from a local image")
    create.add_argument("--image", "-i", type=Path, required=True, help="Path to the source image")
    create.add_argument("--output", "-o", type=Path, default=None, help="Output path (default: STORAGE_DIR/processed/)")
    create.add_argument("instruction", nargs="+", help="Free-text instruction, e.g. 'make a YouTube thumbnail about my Japan trip'")

    args = parser.parse_args(argv)

    if args.command == "create":
        output_path, metadata = asyncio.run(
            create_thumbnail_file(args.image, " ".join(args.instruction), args.output)
        )
        print(f"Saved to: {output_path}")
        print(json.dumps(metadata.model_dump(), indent=2))
        return 0

    import uvicorn
    uvicorn.run(app, host=getattr(args, "host", "0.0.0.0"), port=getattr(args, "port", 8010))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
