"""Bundled static resources (fonts) and their registry."""

from .registry import FontAsset, ResourceBundle, ResourceRegistry, parse_font_name

__all__ = ["FontAsset", "ResourceBundle", "ResourceRegistry", "parse_font_name"]
