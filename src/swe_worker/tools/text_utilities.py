def truncate(text: str, max_length: int = 10_000, head_ratio: float = 0.2) -> str:
    """Keep the start and end of ``text``, dropping the middle when it is too long."""
    if len(text) < max_length:
        return text
    if not 0 <= head_ratio <= 1:
        raise ValueError("head_ratio must be between 0 and 1")

    head = text[: int(max_length * head_ratio)]
    tail_length = int(max_length * (1 - head_ratio))
    tail = text[-tail_length:] if tail_length else ""
    return f"{head}\n..(truncated)..\n{tail}\n// Output was truncated. Original length: {len(text)} characters."
