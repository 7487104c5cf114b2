"""rig-supervisor 入口点。

支持: python -m rig_supervisor 07
"""

from .app import main

if __name__ == "__main__":
    main()
