"""Init command for Kodo CLI - creates a project store in `.kodo/`."""

import logging
import os
from pathlib import Path

from kodo.config import (
    CONFIG_FILENAME,
    HOME_DIRNAME,
    KodoConfig,
    load_config,
    resolve_workstation_id,
    save_config,
)

logger = logging.getLogger(__name__)

# Only the config is meant to be committed with the project
GITIGNORE = "*\n!.gitignore\n!config.json\n"


def cmd_init(args):
    """Create `.kodo/` in the working directory (or `--home`). Safe to re-run.

    An existing config.json is validated and left as it is.
    """
    home = Path(args.home).expanduser() if args.home else Path.cwd() / HOME_DIRNAME
    home = home.resolve()
    config_path = home / CONFIG_FILENAME

    created = not config_path.exists()
    if created:
        save_config(home, KodoConfig())
        logger.debug("Wrote default config to %s", config_path)
    else:
        load_config(home)

    gitignore = home / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(GITIGNORE, encoding="utf-8")

    workstation_id = resolve_workstation_id(home)

    if created:
        print(f"✓ Initialized kodo store at {home}")
    else:
        print(f"✓ Kodo store already initialized at {home}")
    print(f"  Workstation: {workstation_id}")
    print(f"  Config:      {config_path}")

    env_home = os.environ.get("KODO_HOME")
    if env_home and Path(env_home).expanduser().resolve() != home:
        print(f"\n⚠ KODO_HOME is set to {env_home}; commands will use that store instead.")
