import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .errors import SourceNotFound

ELF_MAGIC = b"\x7fELF"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    source_path: str
    destination_path: str
    expected_mode: int = 0o755
    expected_digest: Optional[str] = None
    signature_path: Optional[str] = None
    update_only: bool = False
    magic: Tuple[bytes, ...] = (ELF_MAGIC,)


class PathResolver:
    """Maps tool names to the first existing source among their candidates."""

    def __init__(self, cfg: Dict):
        self.tools = cfg.get("tools") or {}
        self.source_roots = list(cfg.get("source_roots") or [])

    def candidates(self, tool_name: str) -> List[str]:
        entry = self.tools.get(tool_name)
        if entry is None:
            raise SourceNotFound(f"unknown tool: {tool_name}", tool=tool_name)
        out = []
        for template in entry.get("sources") or []:
            if "{source_root}" in template:
                out.extend(template.format(source_root=root) for root in self.source_roots)
            else:
                out.append(template)
        return out

    def resolve(self, tool_name: str) -> str:
        tried = self.candidates(tool_name)
        for path in tried:
            if os.path.isfile(path):
                return path
        raise SourceNotFound(f"no source found (tried: {', '.join(tried) or 'none'})", tool=tool_name)

    def tool_spec(self, tool_name: str, source_path: Optional[str] = None) -> ToolSpec:
        if source_path is None:
            source_path = self.resolve(tool_name)
        entry = self.tools[tool_name]
        magic = entry.get("magic")
        return ToolSpec(
            name=tool_name,
            source_path=source_path,
            destination_path=entry["destination"],
            expected_mode=entry.get("mode", 0o755),
            expected_digest=entry.get("sha256"),
            signature_path=entry.get("signature"),
            update_only=bool(entry.get("update_only", False)),
            magic=tuple(bytes.fromhex(m) for m in magic) if magic else (ELF_MAGIC,),
        )
