"""
Tests for the model scaffolding command.
"""

import pytest

from docmachine.scaffold import main, parse_field, render_model

BLOG_POST = '''"""BlogPost model."""

from datetime import datetime
from typing import Optional

from docmachine import Field, Model


class BlogPost(Model, collection="blog_posts"):
    title: str
    body: Optional[str] = None
    views: int
    tags: list = Field(default_factory=list)
    published: datetime
'''


class TestParseField:
    """Test ``name:type`` parsing."""

    @pytest.mark.parametrize("spec,expected", [
        ("age:int", ("age", "int", False)),
        ("note:str?", ("note", "str", True)),
        ("name", ("name", "str", False)),
        (("ratio", "Float"), ("ratio", "float", False)),
        ("owner_id:objectid?", ("owner_id", "objectid", True)),
    ])
    def test_valid(self, spec, expected):
        assert parse_field(spec) == expected

    @pytest.mark.parametrize("spec", ["1x:int", "class:int", "id:str", "_secret:str", "x:blob"])
    def test_invalid(self, spec):
        with pytest.raises(ValueError):
            parse_field(spec)


class TestRenderModel:
    """Test generated model source."""

    def test_render(self):
        source = render_model(
            "BlogPost", ["title:str", "body:str?", "views:int", "tags:list", "published:datetime"]
        )
        assert source == BLOG_POST

    def test_generated_source_defines_a_model(self):
        source = render_model("Visit", ["page:str", "user_id:objectid?"], collection="visits_log", timestamps=True)
        assert "from bson import ObjectId" in source
        assert "class Visit(TimestampMixin, Model, collection=\"visits_log\"):" in source

        namespace = {"__name__": "scaffolded"}
        exec(compile(source, "scaffolded.py", "exec"), namespace)
        schema = namespace["Visit"].__schema__

        assert schema.collection == "visits_log"
        assert {"page", "user_id", "created_at", "updated_at"} <= set(schema.fields)

    def test_empty_model(self):
        assert render_model("Blank", []).endswith('class Blank(Model, collection="blanks"):\n    pass\n')

    def test_invalid_class_name(self):
        with pytest.raises(ValueError):
            render_model("not valid", [])


class TestMain:
    """Test the command line entry point."""

    def test_prints_to_stdout(self, capsys):
        assert main(["Tag", "label:str"]) == 0
        assert 'class Tag(Model, collection="tags"):' in capsys.readouterr().out

    def test_writes_file(self, tmp_path, capsys):
        output = tmp_path / "models" / "tag.py"

        assert main(["Tag", "label:str", "-o", str(output)]) == 0

        assert "label: str" in output.read_text()
        assert f"Created model Tag: {output}" in capsys.readouterr().out

    def test_refuses_to_overwrite(self, tmp_path, capsys):
        output = tmp_path / "tag.py"
        output.write_text("# keep\n")

        assert main(["Tag", "label:str", "-o", str(output)]) == 1
        assert output.read_text() == "# keep\n"
        assert "--force" in capsys.readouterr().err

        assert main(["Tag", "label:str", "-o", str(output), "--force"]) == 0
        assert "label: str" in output.read_text()

    def test_invalid_field(self, capsys):
        assert main(["Tag", "label:blob"]) == 2
        assert capsys.readouterr().err.startswith("error: Unknown type 'blob'")
