"""Entry point for ``python -m hubris_imagegen``."""

from hubris_imagegen.cli import app

app(prog_name="imagegen")
