from src.mcpcp.compression.compressor import CompressionResult, Compressor, compressed_marker
from src.mcpcp.compression.strategy import Strategy, build_compression_prompt, detect_strategy

__all__ = [
    "CompressionResult",
    "Compressor",
    "Strategy",
    "build_compression_prompt",
    "compressed_marker",
    "detect_strategy",
]
