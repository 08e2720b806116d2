"""
Model scaffolding.

Generates a model module skeleton from a class name and ``field:type``
specs:

    python -m docmachine.scaffold BlogPost title:str body:str? views:int tags:list -o models/blog_post.py

A trailing ``?`` makes the field optional (default None). Pass
``--timestamps`` to mix in TimestampMixin.
"""

import argparse
import keyword
import re
import sys
from pathlib import Path
from typing import Iterable, Optional, Union

from docmachine.models.schema import default_collection_name

# Field type -> (annotation, import line or None)
TYPES: dict[str, tuple[str, Optional[str]]] = {
    "str": ("str", None),
    "int": ("int", None),
    "float": ("float", None),
    "bool": ("bool", None),
    "dict": ("dict", None),
    "list": ("list", None),
    "datetime": ("datetime", "from datetime import datetime"),
    "date": ("date", "from datetime import date"),
    "decimal": ("Decimal", "from decimal import Decimal"),
    "objectid": ("ObjectId", "from bson import ObjectId"),
    "any": ("Any", "from typing import Any"),
}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FieldSpec = Union[str, tuple[str, str]]


def parse_field(spec: FieldSpec) -> tuple[str, str, bool]:
    """
    Parse ``"name:type"`` (or a ``(name, type)`` pair) into name, type and
    optionality.

    Raises:
        ValueError: If the name is not an identifier or the type is unknown
    """
    if isinstance(spec, str):
        name, _, type_name = spec.partition(":")
        type_name = type_name or "str"
    else:
        name, type_name = spec
    optional = type_name.endswith("?")
    type_name = type_name.rstrip("?").lower()

    if not _IDENTIFIER.match(name) or keyword.iskeyword(name):
        raise ValueError(f"'{name}' is not a valid field name")
    if name == "id" or name.startswith("_"):
        raise ValueError(f"'{name}' is reserved")
    if type_name not in TYPES:
        raise ValueError(f"Unknown type '{type_name}' for field '{name}'. Known types: {', '.join(TYPES)}")
    return name, type_name, optional


def render_model(
    name: str,
    fields: Iterable[FieldSpec],
    collection: Optional[str] = None,
    timestamps: bool = False,
) -> str:
    """
    Render the source of a model module.

    Example:
        >>> print(render_model("BlogPost", ["title:str", "views:int"]))
        \"\"\"BlogPost model.\"\"\"
        <BLANKLINE>
        from docmachine import Model
        ...
    """
    if not _IDENTIFIER.match(name) or keyword.iskeyword(name):
        raise ValueError(f"'{name}' is not a valid class name")
    parsed = [parse_field(spec) for spec in fields]

    imports: set[str] = set()
    lines: list[str] = []
    for field_name, type_name, optional in parsed:
        annotation, import_line = TYPES[type_name]
        if import_line:
            imports.add(import_line)
        if optional:
            imports.add("from typing import Optional")
            lines.append(f"    {field_name}: Optional[{annotation}] = None")
        elif type_name in ("list", "dict"):
            lines.append(f"    {field_name}: {annotation} = Field(default_factory={annotation})")
        else:
            lines.append(f"    {field_name}: {annotation}")

    typing_names = sorted(line.rsplit(" ", 1)[1] for line in imports if line.startswith("from typing"))
    stdlib = sorted(line for line in imports if not line.startswith(("from bson", "from typing")))
    if typing_names:
        stdlib.append(f"from typing import {', '.join(typing_names)}")
    third_party = sorted(line for line in imports if line.startswith("from bson"))
    bases = "TimestampMixin, Model" if timestamps else "Model"
    names = ["Model"]
    if any(type_name in ("list", "dict") and not optional for _, type_name, optional in parsed):
        names.insert(0, "Field")
    if timestamps:
        names.append("TimestampMixin")
    package_import = f"from docmachine import {', '.join(names)}"

    out = [f'"""{name} model."""', ""]
    if stdlib:
        out.extend(stdlib)
        out.append("")
    if third_party:
        out.extend(third_party)
        out.append("")
    out.append(package_import)
    out.extend(["", ""])
    out.append(f'class {name}({bases}, collection="{collection or default_collection_name(name)}"):')
    out.extend(lines or ["    pass"])
    return "\n".join(out) + "\n"


def write_model(args: argparse.Namespace) -> int:
    """Render the model and write it (or print it when no output is given)."""
    try:
        source = render_model(args.name, args.fields, args.collection, args.timestamps)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    if args.output is None:
        sys.stdout.write(source)
        return 0

    output_path = Path(args.output)
    if output_path.exists() and not args.force:
        print(f"error: {output_path} exists (use --force to overwrite)", file=sys.stderr)
        return 1
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(source)
    print(f"Created model {args.name}: {output_path}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate a docmachine model module",
        prog="python -m docmachine.scaffold",
    )
    parser.add_argument("name", help="Model class name, e.g. BlogPost")
    parser.add_argument("fields", nargs="*", help="Fields as name:type (append ? for optional)")
    parser.add_argument("-c", "--collection", default=None, help="Collection name (default: snake-cased plural)")
    parser.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    parser.add_argument("--timestamps", action="store_true", help="Mix in TimestampMixin")
    parser.add_argument("-f", "--force", action="store_true", help="Overwrite an existing file")

    args = parser.parse_args(argv)
    return write_model(args)


if __name__ == "__main__":
    sys.exit(main())
