import os


def write_elf(path, elf_class=2, size=None):
    """Write a minimal file that passes the ELF header check."""
    header_size = 64 if elf_class == 2 else 52
    data = b"\x7fELF" + bytes([elf_class, 1, 1]) + b"\x00" * (header_size - 7)
    if size is not None:
        data = data[:size]
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
    return path


def write_text(path, text):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(text)
    return path


class FakeInspector:
    """Answers patchelf --print-needed from a {basename: [needed, ...]} table."""

    def __init__(self, table):
        self.table = table
        self.calls = []

    def __call__(self, path):
        self.calls.append(path)
        return list(self.table.get(os.path.basename(path), []))


class FakeIndex:
    """Stands in for nix-locate: {query_name: [(file_path, attr), ...]}."""

    def __init__(self, table=None):
        self.table = table or {}
        self.queries = []

    def __call__(self, name, timeout):
        self.queries.append(name)
        return list(self.table.get(name, []))


