from __future__ import annotations

import os
import shutil

from selfstart.core.config import SelfStartConfig
from selfstart.core.launch import LaunchSpecBuilder
from selfstart.core.platform import current_platform, is_windows


def run_checks(config: SelfStartConfig, platform_id: str | None = None) -> list[str]:
    platform_id = platform_id or current_platform()
    builder = LaunchSpecBuilder(config.launcher_dir, config.explicit_shell)
    launcher = builder.launcher_for(platform_id)
    fixes: list[str] = []
    if not os.path.isfile(launcher):
        fixes.append(f"launcher: missing {launcher} (Fix: set launcher_dir to the launchtools folder)")
    elif config.explicit_shell is None and not is_windows(platform_id) and not os.access(launcher, os.X_OK):
        fixes.append(f"launcher: {launcher} is not executable (Fix: chmod +x {launcher})")
    if config.explicit_shell is not None and shutil.which(config.explicit_shell) is None:
        fixes.append(f"explicit_shell: '{config.explicit_shell}' not found on PATH")
    return fixes


def main(config: SelfStartConfig | None = None) -> int:
    fixes = run_checks(config or SelfStartConfig.load(create=False))
    if not fixes:
        print("[doctor] all good")
        return 0
    for fix in fixes:
        print(f"[doctor] {fix}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
