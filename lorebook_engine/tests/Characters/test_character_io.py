import base64
import io
import json

import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from lorebook_engine.app.core.Character_Chat.card_normalizer import CardVersion
from lorebook_engine.app.core.Character_Chat.character_io import (
    embed_card_in_png,
    extract_card_json_from_png,
    import_character_card,
    load_card_from_string,
)
from lorebook_engine.app.core.Character_Chat.world_info_exceptions import UnrecognizedSchema

pytestmark = pytest.mark.unit

V2_CARD = {
    "spec": "chara_card_v2",
    "spec_version": "2.0",
    "data": {
        "name": "PngChar",
        "description": "From a PNG",
        "character_book": {"name": "Png Lore", "entries": [{"id": 0, "keys": ["lamp"], "content": "Lit."}]},
    },
}


def _b64(document):
    return base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")


def make_png(chunks=None):
    img = Image.new("RGBA", (4, 4), (0, 128, 255, 255))
    meta = PngInfo()
    for key, value in (chunks or {}).items():
        meta.add_text(key, value)
    buf = io.BytesIO()
    img.save(buf, format="PNG", pnginfo=meta)
    return buf.getvalue()


class TestStrings:
    def test_json(self):
        assert load_card_from_string(json.dumps(V2_CARD)) == V2_CARD

    def test_yaml_fallback(self):
        doc = load_card_from_string("name: YamlChar\ndescription: from yaml\n")
        assert doc == {"name": "YamlChar", "description": "from yaml"}

    @pytest.mark.parametrize("content", ["", "   ", "[1, 2]", "just a sentence"])
    def test_rejects_non_objects(self, content):
        with pytest.raises(UnrecognizedSchema):
            load_card_from_string(content)


class TestPng:
    def test_extract_chara_chunk(self):
        png = make_png({"chara": _b64(V2_CARD)})
        assert extract_card_json_from_png(png) == V2_CARD

    def test_ccv3_preferred_over_chara(self):
        v3 = {"spec": "chara_card_v3", "spec_version": "3.0", "data": {"name": "Newer"}}
        png = make_png({"chara": _b64(V2_CARD), "ccv3": _b64(v3)})
        assert extract_card_json_from_png(png)["data"]["name"] == "Newer"

    def test_falls_back_when_ccv3_is_garbage(self):
        png = make_png({"chara": _b64(V2_CARD), "ccv3": "!!not base64 json!!"})
        assert extract_card_json_from_png(png) == V2_CARD

    def test_png_without_card(self):
        with pytest.raises(UnrecognizedSchema):
            extract_card_json_from_png(make_png({"Comment": "hello"}))

    def test_not_a_png(self):
        with pytest.raises(UnrecognizedSchema):
            extract_card_json_from_png(b"GIF89a\x01\x00\x01\x00\x00\x00\x00;")

    def test_embed_then_import(self):
        card = import_character_card(make_png({"chara": _b64(V2_CARD)}))
        card.extensions["world"] = "Atlas"
        png = embed_card_in_png(make_png({"Comment": "keep me"}), card)

        with Image.open(io.BytesIO(png)) as img:
            assert img.text["Comment"] == "keep me"
            assert set(img.text) >= {"chara", "ccv3"}
            legacy = json.loads(base64.b64decode(img.text["chara"]))
        assert legacy["spec"] == "chara_card_v2"

        again = import_character_card(png)
        assert again.source_version is CardVersion.V3
        assert again.linked_world == "Atlas"
        assert again.character_book.entries[0].keys == ["lamp"]


class TestImport:
    def test_from_text_and_mapping(self):
        assert import_character_card(json.dumps(V2_CARD)).name == "PngChar"
        assert import_character_card(V2_CARD).character_book.name == "Png Lore"

    def test_from_utf8_bytes(self):
        assert import_character_card(json.dumps(V2_CARD).encode("utf-8")).name == "PngChar"

    def test_declared_version_passed_through(self):
        card = import_character_card({"name": "Flat", "description": "d"}, declared_version="v1")
        assert card.source_version is CardVersion.V1

    def test_unsupported_source(self):
        with pytest.raises(UnrecognizedSchema):
            import_character_card(12345)
