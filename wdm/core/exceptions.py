"""统一异常体系

所有业务异常继承 WdmError，每个类带稳定的 code，调用方按类型或 code 分支。
单个依赖的流水线中抛出的异常由协调引擎收敛为该依赖的 Failed 结果，
不会中断其他依赖的处理。

分类:
  ResolutionError  - NoMatchingVersion / InvalidConstraintSyntax
  FetchError       - MissingCredential / Unauthorized / NotFound / RateLimited / ConnectionFailure
  IntegrityError   - HashMismatch / CacheCollision
  InstallError     - UnsafeArchiveEntry / MalformedArchive / FilesystemDenied
  ConfigError      - 清单、锁文件或配置结构非法
  InternalError    - 未归类的意外异常，仍只影响出错的那个依赖
"""

from __future__ import annotations


class WdmError(Exception):
    """wdm 基础异常"""

    code: str = "UNKNOWN"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(WdmError):
    """配置文件、清单或锁文件缺失或结构非法"""

    code = "CONFIG_ERROR"


class InternalError(WdmError):
    """流水线中出现的未归类异常，原异常在 __cause__ 里"""

    code = "INTERNAL_ERROR"


# ---- 版本解析 ----

class ResolutionError(WdmError):
    """版本约束无法解析到唯一标签"""

    code = "RESOLUTION_ERROR"


class NoMatchingVersion(ResolutionError):
    code = "NO_MATCHING_VERSION"


class InvalidConstraintSyntax(ResolutionError):
    code = "INVALID_CONSTRAINT_SYNTAX"


# ---- 远程拉取 ----

class FetchError(WdmError):
    """远程仓库访问失败"""

    code = "FETCH_ERROR"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MissingCredential(FetchError):
    """token_env 指定的环境变量未设置"""

    code = "MISSING_CREDENTIAL"


class Unauthorized(FetchError):
    code = "UNAUTHORIZED"


class NotFound(FetchError):
    code = "NOT_FOUND"


class RateLimited(FetchError):
    code = "RATE_LIMITED"
    retryable = True

    def __init__(
        self, message: str, status: int | None = None, retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status)
        self.retry_after = retry_after


class ConnectionFailure(FetchError):
    code = "CONNECTION_FAILURE"
    retryable = True

    def __init__(
        self, message: str, status: int | None = None, retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status)
        self.retry_after = retry_after


# ---- 完整性 ----

class IntegrityError(WdmError):
    """内容哈希校验失败，永不自动修复"""

    code = "INTEGRITY_ERROR"


class HashMismatch(IntegrityError):
    code = "HASH_MISMATCH"

    def __init__(self, message: str, expected: str = "", actual: str = "") -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class CacheCollision(IntegrityError):
    """同一哈希键下出现内容不同的缓存条目"""

    code = "CACHE_COLLISION"


# ---- 安装 ----

class InstallError(WdmError):
    """归档解压或目录替换失败"""

    code = "INSTALL_ERROR"


class UnsafeArchiveEntry(InstallError):
    """归档条目会落到解压根目录之外"""

    code = "UNSAFE_ARCHIVE_ENTRY"

    def __init__(self, message: str, entry: str = "") -> None:
        super().__init__(message)
        self.entry = entry


class MalformedArchive(InstallError):
    code = "MALFORMED_ARCHIVE"


class FilesystemDenied(InstallError):
    code = "FILESYSTEM_DENIED"
