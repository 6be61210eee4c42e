def format_bytes(size: int) -> str:
    """Format a byte count the way log lines and digests show it (e.g. 12MB)."""
    if size >= 1024 ** 3:
        return f"{size // 1024 ** 3}GB"
    if size >= 1024 ** 2:
        return f"{size // 1024 ** 2}MB"
    if size >= 1024:
        return f"{size // 1024}KB"
    return f"{size}B"
