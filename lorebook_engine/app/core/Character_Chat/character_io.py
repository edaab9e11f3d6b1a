# character_io.py
# Description: Decode character cards from JSON/YAML text or PNG bytes, and embed them back into PNGs
#
# Imports
import base64
import binascii
import io
import json
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger
from PIL import Image, UnidentifiedImageError
from PIL.PngImagePlugin import PngInfo

from lorebook_engine.app.core.Character_Chat.card_normalizer import (
    CardVersion,
    CharacterCard,
    denormalize,
    normalize,
)
from lorebook_engine.app.core.Character_Chat.world_info_exceptions import UnrecognizedSchema

#######################################################################################################################
#
# Functions:

# Text chunk keywords used by card editors; ccv3 carries the newer payload
PNG_CHUNK_V2 = "chara"
PNG_CHUNK_V3 = "ccv3"
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def load_card_from_string(content: str) -> Dict[str, Any]:
    """
    Parse card text as JSON, falling back to YAML.

    Raises:
        UnrecognizedSchema: if the text is neither, or does not hold an object
    """
    if not isinstance(content, str) or not content.strip():
        raise UnrecognizedSchema("Card content is empty")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise UnrecognizedSchema("Card content is neither valid JSON nor YAML", cause=e)
        logger.debug("Card content parsed as YAML")
    if not isinstance(parsed, dict):
        raise UnrecognizedSchema(f"Card content must decode to an object, got {type(parsed).__name__}")
    return parsed


def _decode_chunk(keyword: str, raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, bytes):
        raw = raw.decode("latin-1")
    try:
        decoded = base64.b64decode(raw, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"PNG '{keyword}' chunk is not valid base64 UTF-8: {e}")
        return None
    try:
        data = json.loads(decoded)
    except json.JSONDecodeError as e:
        logger.warning(f"PNG '{keyword}' chunk does not hold JSON: {e}")
        return None
    return data if isinstance(data, dict) else None


def extract_card_json_from_png(image_bytes: bytes) -> Dict[str, Any]:
    """
    Read the embedded card from a PNG's text chunks.

    The ``ccv3`` chunk is preferred over ``chara`` when both decode.

    Raises:
        UnrecognizedSchema: if the bytes are not a PNG or carry no usable card chunk
    """
    if not image_bytes.startswith(_PNG_SIGNATURE):
        raise UnrecognizedSchema("Card image is not a PNG")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            text_chunks = dict(getattr(img, "text", {}) or img.info)
    except (UnidentifiedImageError, OSError) as e:
        raise UnrecognizedSchema("Card image could not be read", cause=e)

    for keyword in (PNG_CHUNK_V3, PNG_CHUNK_V2):
        if keyword in text_chunks:
            data = _decode_chunk(keyword, text_chunks[keyword])
            if data is not None:
                logger.debug(f"Found card in PNG '{keyword}' chunk")
                return data
    raise UnrecognizedSchema(
        "PNG carries no card chunk",
        details={"chunks": sorted(str(k) for k in text_chunks.keys())},
    )


def import_character_card(
    source: Union[bytes, str, Dict[str, Any]],
    declared_version: Optional[Union[CardVersion, str, int, float]] = None,
) -> CharacterCard:
    """
    Decode and normalize a card from PNG bytes, JSON/YAML text, or a parsed mapping.

    Args:
        source: Raw card source
        declared_version: Optional explicit version passed through to the normalizer

    Returns:
        CharacterCard

    Raises:
        UnrecognizedSchema: for undecodable input or an unknown card shape
    """
    if isinstance(source, (bytes, bytearray)):
        raw = bytes(source)
        if raw.startswith(_PNG_SIGNATURE):
            document = extract_card_json_from_png(raw)
        else:
            try:
                document = load_card_from_string(raw.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise UnrecognizedSchema("Card bytes are neither PNG nor UTF-8 text", cause=e)
    elif isinstance(source, str):
        document = load_card_from_string(source)
    elif isinstance(source, dict):
        document = source
    else:
        raise UnrecognizedSchema(f"Unsupported card source type {type(source).__name__}")

    card = normalize(document, declared_version)
    logger.info(f"Imported character card '{card.name}' ({card.source_version.value})")
    return card


def _encode_chunk(document: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(document, ensure_ascii=False).encode("utf-8")).decode("ascii")


def embed_card_in_png(image_bytes: bytes, card: CharacterCard) -> bytes:
    """
    Write the card into a copy of the image.

    Both chunks are written: ``chara`` with the nested legacy shape for older
    readers and ``ccv3`` with the current shape.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            meta = PngInfo()
            existing = getattr(img, "text", {}) or {}
            for key, value in existing.items():
                if key not in (PNG_CHUNK_V2, PNG_CHUNK_V3) and isinstance(value, str):
                    meta.add_text(key, value)
            meta.add_text(PNG_CHUNK_V2, _encode_chunk(denormalize(card, CardVersion.V2)))
            meta.add_text(PNG_CHUNK_V3, _encode_chunk(denormalize(card, CardVersion.V3)))
            out = io.BytesIO()
            img.save(out, format="PNG", pnginfo=meta)
    except (UnidentifiedImageError, OSError) as e:
        raise UnrecognizedSchema("Image could not be read for card embedding", cause=e)
    logger.debug(f"Embedded card '{card.name}' into PNG ({out.tell()} bytes)")
    return out.getvalue()

#
# End of character_io.py
#######################################################################################################################
