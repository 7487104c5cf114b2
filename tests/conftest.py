"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import io
import os
import stat
import sys
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_MINER = FIXTURES_DIR / "fake_miner.py"


@pytest.fixture(autouse=True)
def clean_rig_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """清除 RIG_* 环境变量，并重置全局配置。"""
    for key in list(os.environ):
        if key.startswith("RIG_"):
            monkeypatch.delenv(key, raising=False)

    from rig_supervisor import config

    monkeypatch.setattr(config, "_config", None)


def fake_miner_script(marker: Path | None = None, extra_args: str = "") -> str:
    """生成调用 fake_miner.py 的 shell 包装脚本内容。"""
    marker_arg = f" --marker '{marker}'" if marker else ""
    return (
        "#!/bin/sh\n"
        f"exec '{sys.executable}' '{FAKE_MINER}'{marker_arg} {extra_args} \"$@\"\n"
    )


@pytest.fixture
def make_fake_miner(tmp_path: Path) -> Callable[..., Path]:
    """在 tmp_path 下创建可执行的假矿工。"""

    def _make(name: str = "miner", marker: Path | None = None, extra_args: str = "") -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(fake_miner_script(marker, extra_args))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


def build_tarball(files: dict[str, str], mode: int = 0o644) -> bytes:
    """构造 .tar.gz 内容：{归档内路径: 文本内容}。"""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def tarball() -> Callable[..., bytes]:
    """返回构造 .tar.gz 的函数。"""
    return build_tarball


@pytest.fixture
def miner_script() -> Callable[..., str]:
    """返回生成假矿工包装脚本内容的函数。"""
    return fake_miner_script
