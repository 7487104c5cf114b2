"""rig-supervisor - GPU/CPU 矿工安装与监督守护进程。

环境变量:
    RIG_WORKDIR: 工作目录 (默认 ~/work)
    RIG_RESTART_DELAY: 重启等待时间 (默认 15s)
    RIG_GPU_OUTPUT / RIG_CPU_OUTPUT: console | file

用法:
    rig-supervisor 07
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
