"""Convert Doom-format WAD levels into binary glTF (GLB) scenes."""

__version__ = "0.1.0"
