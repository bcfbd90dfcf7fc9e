from src.mcpcp.masking.llm_detector import DetectionResult, LLMDetector
from src.mcpcp.masking.masker import Masker, MaskResult, PIIMatch, restore_result
from src.mcpcp.masking.patterns import (
    BUILTIN_PATTERNS,
    PIIPattern,
    clone_pattern,
    create_custom_pattern,
    find_matches,
    get_patterns_for_types,
)

__all__ = [
    "BUILTIN_PATTERNS",
    "DetectionResult",
    "LLMDetector",
    "MaskResult",
    "Masker",
    "PIIMatch",
    "PIIPattern",
    "clone_pattern",
    "create_custom_pattern",
    "find_matches",
    "get_patterns_for_types",
    "restore_result",
]
