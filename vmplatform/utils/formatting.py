def format_bytes(num_bytes, precision=2):
    """Human readable size, e.g. 1536 -> '1.5 KB'."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes or 0)
    index = 0
    while value > 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, precision):g} {units[index]}"
