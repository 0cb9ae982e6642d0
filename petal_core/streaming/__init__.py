from petal_core.streaming.assembler import StreamAssembler, normalize_delta

__all__ = ["StreamAssembler", "normalize_delta"]
