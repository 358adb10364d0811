"""API token 查找。

这是一个有副作用的显式初始化步骤（读环境/配置与磁盘文件），只在
create_transport / create_conversation 中调用，导入时不会执行。
"""

from pathlib import Path
from typing import Any, Optional

TOKEN_FILE_NAME = ".naitoken"


def read_token_file(path: Path) -> Optional[str]:
    """读取 token 文件并去掉首尾空白；文件不存在或读不了时返回 None。"""

    try:
        token = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return token or None


def discover_api_token(explicit: Optional[str] = None, config: Optional[Any] = None) -> Optional[str]:
    """按优先级查找 token：

    1. 显式传入的 explicit；
    2. config.nai_api_key（来自环境变量 NAI_API_KEY、.env 或 config.yaml）；
    3. ~/.naitoken；
    4. 当前目录下的 .naitoken。
    """

    if explicit:
        return explicit
    configured = getattr(config, "nai_api_key", None)
    if configured:
        return configured
    try:
        home = Path.home()
    except RuntimeError:
        home = None
    if home is not None:
        token = read_token_file(home / TOKEN_FILE_NAME)
        if token:
            return token
    return read_token_file(Path.cwd() / TOKEN_FILE_NAME)
