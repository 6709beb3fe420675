#!/usr/bin/env python3
"""
SMS Nudge - Interactive Menu Launcher
Run this file to access all SMS Nudge commands through a simple menu.

Usage:
    python main.py
"""

import subprocess
import sys
import os

PYTHON = sys.executable
NUDGE = [PYTHON, "smsnudge/cli/main.py"]

# Project root on PYTHONPATH so 'smsnudge' package is importable
ENV = os.environ.copy()
ENV["PYTHONPATH"] = os.path.dirname(os.path.abspath(__file__))

ALGORITHMS = ("mass", "campaign", "auto-nudge")


def run(args: list[str]):
    """Run an SMS Nudge CLI command and return to menu when done."""
    print()
    subprocess.run(NUDGE + args, env=ENV)
    print()
    input("  Press Enter to return to menu...")


def prompt(label: str, required: bool = True) -> str:
    """Prompt user for input. Returns empty string if optional and skipped."""
    while True:
        value = input(f"  {label}: ").strip()
        if value:
            return value
        if not required:
            return ""
        print("  (required - please enter a value)")


def prompt_optional(label: str) -> str:
    return prompt(f"{label} (optional, Enter to skip)", required=False)


def clear():
    os.system("cls" if os.name == "nt" else "clear")


# =============================================================================
# COMMAND HANDLERS
# =============================================================================

def preview():
    account = prompt("Account ID")
    args = ["preview", account]
    algorithm = prompt_optional("Algorithm - mass / campaign / auto-nudge (default: campaign)")
    if algorithm in ALGORITHMS: args += ["--algorithm", algorithm]
    limit = prompt_optional("Max recipients")
    if limit: args += ["--limit", limit]
    vt = prompt_optional("Visiting type (consistent/regular/rare/...)")
    if vt: args += ["--visiting-type", vt]
    mid = prompt_optional("Scheduled message ID")
    if mid: args += ["--message-id", mid]
    run(args)

def holidays_active():
    args = ["holidays", "active"]
    d = prompt_optional("Date YYYY-MM-DD (default: today)")
    if d: args += ["--date", d]
    run(args)

def holidays_list():
    run(["holidays", "list"])

def credits_show():
    account = prompt("Account ID")
    run(["credits", "show", account])

def credits_grant():
    account = prompt("Account ID")
    amount = prompt("Pack size (100/250/500/1000)")
    run(["credits", "grant", account, amount])

def credits_reserve():
    account = prompt("Account ID")
    count = prompt("Credits to reserve")
    run(["credits", "reserve", account, count])

def nudge_check():
    account = prompt("Account ID")
    run(["nudge", "check", account])

def nudge_run():
    account = prompt("Account ID")
    run(["nudge", "run", account])


# =============================================================================
# MENU LAYOUT
# =============================================================================

MENU = [
    ("RECIPIENTS", [
        ("Preview recipients",           preview),
    ]),
    ("HOLIDAYS", [
        ("Active holiday",               holidays_active),
        ("List holidays",                holidays_list),
    ]),
    ("CREDITS", [
        ("Show balance",                 credits_show),
        ("Add credit pack",              credits_grant),
        ("Reserve credits",              credits_reserve),
    ]),
    ("AUTO-NUDGE", [
        ("Check this week's bucket",     nudge_check),
        ("Create this week's bucket",    nudge_run),
    ]),
]


def print_menu():
    clear()
    print("=" * 50)
    print("   SMS NUDGE - COMMAND CENTRE")
    print("=" * 50)

    n = 1
    numbering = {}  # maps display number -> handler function

    for section, commands in MENU:
        print(f"\n  {section}")
        print(f"  {'-' * len(section)}")
        for label, handler in commands:
            print(f"  {n:>2}.  {label}")
            numbering[n] = handler
            n += 1

    print("\n" + "=" * 50)
    print("   0.  Exit")
    print("=" * 50)
    return numbering


def main():
    while True:
        numbering = print_menu()

        try:
            choice = input("\n  Select a command: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\n  Goodbye!\n")
            break

        if choice == "0" or choice.lower() in ("q", "quit", "exit"):
            print("\n  Goodbye!\n")
            break

        try:
            n = int(choice)
            if n in numbering:
                clear()
                numbering[n]()
            else:
                print(f"\n  Invalid selection: {choice}")
                input("  Press Enter to continue...")
        except ValueError:
            print(f"\n  Please enter a number.")
            input("  Press Enter to continue...")


if __name__ == "__main__":
    main()
