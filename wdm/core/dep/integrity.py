"""内容完整性校验 - SHA-256"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from wdm.core.exceptions import HashMismatch

logger = logging.getLogger(__name__)

_CHUNK = 8192


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """分块计算文件的 SHA-256，不把整个归档读入内存"""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def verify(source: bytes | Path, expected: str | None = None) -> str:
    """计算内容哈希，给出 expected 时必须完全一致

    返回:
        实际计算出的十六进制摘要

    异常:
        HashMismatch: 哈希与 expected 不一致（篡改或上游不可复现），不做任何修复
    """
    actual = sha256_bytes(source) if isinstance(source, bytes) else sha256_file(source)
    if expected and actual != expected.lower():
        raise HashMismatch(
            f"内容哈希不匹配: 期望 {expected}, 实际 {actual}",
            expected=expected, actual=actual,
        )
    if expected:
        logger.debug("哈希校验通过: %s", actual)
    return actual
