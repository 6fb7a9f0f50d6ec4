import argparse
import json
import os
from pathlib import Path
from typing import Any

# Host hook name -> capture event kind
HOOK_EVENTS = {
    "SessionStart": "session-start",
    "UserPromptSubmit": "user-prompt",
    "Stop": "claude-response",
    "SessionEnd": "session-end",
    "PreCompact": "conversation-compress",
}

HOOK_TIMEOUT_SECONDS = 30


def get_settings_path() -> Path:
    """Get the path to the host tool's settings file."""
    # Priority: Env var -> ~/.claude/settings.json
    if os.environ.get("CLAUDE_CONFIG_DIR"):
        return Path(os.environ["CLAUDE_CONFIG_DIR"]) / "settings.json"
    return Path.home() / ".claude" / "settings.json"


def load_settings(path: Path) -> dict[str, Any]:
    """Load existing settings or return empty dict."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError:
        print(f"Warning: Could not parse {path}. Starting with empty settings.")
        return {}


def save_settings(path: Path, settings: dict[str, Any]) -> None:
    """Save settings to file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=2)


def hook_command(hook_cmd: str, hook_type: str) -> str:
    return f"{hook_cmd} capture --event={HOOK_EVENTS[hook_type]}"


def create_hook_config(hook_cmd: str, hook_type: str) -> dict[str, Any]:
    """Create the settings entry for one host hook.

    Structure expected by the host:
    "HookName": [ { "hooks": [ { "type": "command", ... } ] } ]
    """
    return {
        "hooks": [
            {
                "type": "command",
                "command": hook_command(hook_cmd, hook_type),
                "timeout": HOOK_TIMEOUT_SECONDS,
            }
        ]
    }


def is_our_hook(entry: Any, hook_cmd: str) -> bool:
    """True when any command in the entry runs ``<hook_cmd> capture``."""
    if not isinstance(entry, dict):
        return False
    prefix = f"{hook_cmd} capture"
    for hook in entry.get("hooks", []):
        if isinstance(hook, dict) and str(hook.get("command", "")).startswith(prefix):
            return True
    return False


def install_hooks(
    hook_cmd: str, dry_run: bool = False, settings_path: Path | None = None
) -> bool:
    """Register the capture hooks, replacing earlier entries for ``hook_cmd``.

    Returns:
        True if the settings changed.
    """
    settings_path = settings_path or get_settings_path()
    print(f"Installing hooks to {settings_path}...")

    settings = load_settings(settings_path)
    hooks_config = settings.get("hooks", {})

    changes_made = False
    for hook_type in HOOK_EVENTS:
        new_entry = create_hook_config(hook_cmd, hook_type)
        current_list = hooks_config.get(hook_type, [])
        kept = [entry for entry in current_list if not is_our_hook(entry, hook_cmd)]

        if kept + [new_entry] == current_list:
            print(f"  [Skip] {hook_type}: Hook already installed.")
            continue

        if len(kept) < len(current_list):
            print(f"  [Replace] {hook_type}: {hook_command(hook_cmd, hook_type)}")
        else:
            print(f"  [Add]  {hook_type}: {hook_command(hook_cmd, hook_type)}")
        hooks_config[hook_type] = [*kept, new_entry]
        changes_made = True

    if changes_made:
        settings["hooks"] = hooks_config
        if not dry_run:
            save_settings(settings_path, settings)
            print("Settings saved.")
        else:
            print("Dry run: No changes saved.")
    else:
        print("No changes needed.")
    return changes_made


def uninstall_hooks(
    hook_cmd: str, dry_run: bool = False, settings_path: Path | None = None
) -> bool:
    """Remove every hook entry that runs ``hook_cmd``.

    Returns:
        True if the settings changed.
    """
    settings_path = settings_path or get_settings_path()
    print(f"Uninstalling hooks from {settings_path}...")

    settings = load_settings(settings_path)
    hooks_config = settings.get("hooks", {})

    changes_made = False
    for hook_type in list(hooks_config):
        current_list = hooks_config[hook_type]
        if not isinstance(current_list, list):
            continue
        new_list = [entry for entry in current_list if not is_our_hook(entry, hook_cmd)]
        if len(new_list) == len(current_list):
            continue

        print(f"  [Remove] {hook_type}")
        changes_made = True
        if new_list:
            hooks_config[hook_type] = new_list
        else:
            del hooks_config[hook_type]

    if changes_made:
        settings["hooks"] = hooks_config
        if not dry_run:
            save_settings(settings_path, settings)
            print("Settings saved.")
        else:
            print("Dry run: No changes saved.")
    else:
        print("No hooks found to remove.")
    return changes_made


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Manage context-extender hooks.")
    parser.add_argument("action", choices=["install", "uninstall"], help="Action to perform")
    parser.add_argument("--dry-run", action="store_true", help="Don't save changes")
    parser.add_argument(
        "--hook-cmd", default="context-extender", help="Path to the context-extender command"
    )

    args = parser.parse_args(argv)

    if args.action == "install":
        install_hooks(args.hook_cmd, args.dry_run)
    elif args.action == "uninstall":
        uninstall_hooks(args.hook_cmd, args.dry_run)


if __name__ == "__main__":
    main()
