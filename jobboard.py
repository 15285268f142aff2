#!/usr/bin/env python3
"""jobboard -- escrowed job marketplace client.

Usage:
    jobboard jobs                         Open and assigned jobs
    jobboard jobs --mine                  Jobs you posted
    jobboard jobs --assigned              Jobs assigned to you
    jobboard show ID                      Job detail, description, your actions
    jobboard post TITLE BUDGET --desc T   Post a job (BUDGET in ETH)
    jobboard escrow ID                    Lock the budget in escrow (employer)
    jobboard apply ID                     Take an escrowed job (freelancer)
    jobboard done ID                      Mark work done (freelancer)
    jobboard release ID                   Release payment (employer)
    jobboard refund ID                    Refund after the cooldown (employer)
    jobboard dispute ID                   Raise a dispute (either party)
    jobboard watch [--mine|--assigned]    Live list, reprinted on change
    jobboard chat ID                      Live chat for an active job
    jobboard relay [--host H --port P]    Run the chat relay server
    jobboard init                         Create a .jobboard.py for this project

Options:
    -v, --verbose                         Debug logging
    --sim                                 Use the simulated chain (no node needed)
    --account ADDR                        Act as ADDR (with --sim: employer, freelancer, other)
    -y, --yes                             Sign without asking

Config:
    ~/.jobboard/config.py                 Global config (Python)
    .jobboard.py                          Project config (overrides global)

    Config vars: rpc_url, contract_address, account, private_key, relay_url,
                 pinata_jwt, ipfs_gateway, poll_interval, sim, sim_db,
                 chat_attempts, chat_retry_delay
"""

import argparse
import asyncio
import logging
import os
import sys

# Add script directory to path so sibling modules are importable
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from lifecycle import JobAction, available_actions, parse_action
from projector import Job, JobStateProjector, Scope, Snapshot
from protocol import (
    CHAT_RECONNECT_ATTEMPTS, CHAT_RETRY_DELAY, DEFAULT_CONTRACT_ADDRESS, DEFAULT_IPFS_GATEWAY,
    DEFAULT_POLL_INTERVAL, DEFAULT_RELAY_URL, DEFAULT_RPC_URL, ChatUnavailableError,
    GuardViolationError, JobBoardError, shorten_address,
)
from session import JobBoardSession
from textstore import LocalTextStore, PinataStore, fetch_description

logger = logging.getLogger("jobboard")

# --- Config ---
CONFIG_DIR = os.environ.get("JOBBOARD_HOME", os.path.expanduser("~/.jobboard"))

# Well-known simulated accounts, usable by name with --sim
SIM_ACCOUNTS = {
    "employer": "0x1111111111111111111111111111111111111111",
    "freelancer": "0x2222222222222222222222222222222222222222",
    "other": "0x3333333333333333333333333333333333333333",
}
SIM_FAUCET_ETHER = "100"

ACTION_COMMANDS = {
    "escrow": JobAction.ESCROW,
    "apply": JobAction.APPLY,
    "done": JobAction.MARK_DONE,
    "release": JobAction.RELEASE,
    "refund": JobAction.REFUND,
    "dispute": JobAction.RAISE_DISPUTE,
}


# --- Colors ---
C_RESET = "\033[0m"
C_RED = "\033[31m"
C_GREEN = "\033[32m"
C_YELLOW = "\033[33m"
C_CYAN = "\033[36m"
C_DIM = "\033[2m"
C_BOLD = "\033[1m"

if not sys.stderr.isatty():
    C_RESET = C_RED = C_GREEN = C_YELLOW = C_CYAN = C_DIM = C_BOLD = ""


def status(icon, msg):
    print(f"  {icon}  {msg}", file=sys.stderr)


# --- Config (Python) ---

DEFAULTS = {
    "rpc_url": DEFAULT_RPC_URL,
    "contract_address": DEFAULT_CONTRACT_ADDRESS,
    "account": os.environ.get("JOBBOARD_ACCOUNT", ""),
    "private_key": os.environ.get("JOBBOARD_PRIVATE_KEY", ""),
    "relay_url": DEFAULT_RELAY_URL,
    "pinata_jwt": os.environ.get("JOBBOARD_PINATA_JWT", ""),
    "ipfs_gateway": DEFAULT_IPFS_GATEWAY,
    "poll_interval": DEFAULT_POLL_INTERVAL,
    "sim": False,
    "sim_db": os.environ.get("JOBBOARD_SIM_DB", ""),
    "chat_attempts": CHAT_RECONNECT_ATTEMPTS,
    "chat_retry_delay": CHAT_RETRY_DELAY,
}


def _exec_config(path):
    """Execute a Python config file and return its namespace as a dict."""
    ns = {"__builtins__": __builtins__}
    try:
        with open(path) as f:
            exec(f.read(), ns)
    except FileNotFoundError:
        return {}
    except Exception as e:
        status(f"{C_RED}✗{C_RESET}", f"Error in {path}: {e}")
        return {}
    return {k: v for k, v in ns.items() if not k.startswith("_")}


def _find_project_config():
    """Walk up from CWD to find .jobboard.py (stops at git root or /)."""
    d = os.getcwd()
    while True:
        candidate = os.path.join(d, ".jobboard.py")
        if os.path.isfile(candidate):
            return candidate
        if os.path.isdir(os.path.join(d, ".git")):
            break
        parent = os.path.dirname(d)
        if parent == d:
            break
        d = parent
    return None


def load_config():
    """Load config: defaults <- ~/.jobboard/config.py <- .jobboard.py (project-local)."""
    cfg = dict(DEFAULTS)
    cfg.update(_exec_config(os.path.join(CONFIG_DIR, "config.py")))
    project_path = _find_project_config()
    if project_path:
        cfg.update(_exec_config(project_path))
        cfg["_project_config"] = project_path
    return cfg


def generate_config():
    """Write a .jobboard.py template in CWD."""
    if os.path.exists(".jobboard.py"):
        status(f"{C_YELLOW}!{C_RESET}", ".jobboard.py already exists, not overwriting")
        return False
    lines = [
        "# .jobboard.py -- project config for jobboard",
        "",
        "# --- Chain ---",
        "",
        f'rpc_url = "{DEFAULT_RPC_URL}"',
        '# contract_address = "0x..."   # deployed JobBoard',
        '# account = "0x..."            # unlocked node account (Ganache)',
        "# private_key = None           # or set JOBBOARD_PRIVATE_KEY; never commit keys",
        "",
        "# --- Simulated chain (no node needed) ---",
        "",
        "sim = False",
        '# sim_db = "~/.jobboard/sim.db"',
        "",
        "# --- Descriptions ---",
        "",
        "# pinata_jwt = None            # or set JOBBOARD_PINATA_JWT",
        f'ipfs_gateway = "{DEFAULT_IPFS_GATEWAY}"',
        "",
        "# --- Chat ---",
        "",
        f'relay_url = "{DEFAULT_RELAY_URL}"',
        f"chat_attempts = {CHAT_RECONNECT_ATTEMPTS}",
        "",
        f"poll_interval = {DEFAULT_POLL_INTERVAL}",
        "",
    ]
    with open(".jobboard.py", "w") as f:
        f.write("\n".join(lines))
    print(f"Created .jobboard.py ({os.path.basename(os.getcwd())})")
    return True


# --- Wiring ---

def _sim_db_path(cfg) -> str:
    return os.path.expanduser(cfg.get("sim_db") or os.path.join(CONFIG_DIR, "sim.db"))


def resolve_account(cfg) -> str | None:
    account = cfg.get("account") or None
    if cfg.get("sim") and account in SIM_ACCOUNTS:
        return SIM_ACCOUNTS[account]
    if cfg.get("sim") and account is None:
        return SIM_ACCOUNTS["employer"]
    return account


def make_approve(assume_yes: bool):
    if assume_yes:
        return None

    def approve(description: str) -> bool:
        try:
            answer = input(f"  Sign {description}? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    return approve


def build_gateway(cfg, approve=None):
    account = resolve_account(cfg)
    if cfg.get("sim"):
        from simchain import SimChain, SimGateway
        path = _sim_db_path(cfg)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        chain = SimChain(path)
        if account and chain.balance_of(account) == 0:
            chain.fund(account, SIM_FAUCET_ETHER)
            status(f"{C_DIM}▸{C_RESET}", f"Funded {shorten_address(account)} with {SIM_FAUCET_ETHER} ETH (sim)")
        return SimGateway(chain, account=account, approve=approve)

    from gateway import Web3Gateway
    return Web3Gateway(
        rpc_url=cfg["rpc_url"],
        contract_address=cfg["contract_address"],
        account=account,
        private_key=cfg.get("private_key") or None,
        approve=approve,
    )


def build_text_store(cfg):
    if cfg.get("pinata_jwt"):
        return PinataStore(jwt=cfg["pinata_jwt"], gateway=cfg["ipfs_gateway"])
    if cfg.get("sim"):
        return LocalTextStore(os.path.join(os.path.dirname(_sim_db_path(cfg)) or ".", "ipfs"))
    # Read-only: uploads fail until a JWT is configured
    return PinataStore(gateway=cfg["ipfs_gateway"])


def build_session(cfg, assume_yes: bool = False) -> JobBoardSession:
    return JobBoardSession(
        build_gateway(cfg, make_approve(assume_yes)),
        text_store=build_text_store(cfg),
        relay_url=cfg["relay_url"],
        poll_interval=float(cfg["poll_interval"]),
        chat_attempts=int(cfg["chat_attempts"]),
        chat_retry_delay=float(cfg["chat_retry_delay"]),
    )


# --- Output ---

def format_job(job: Job) -> str:
    budget = f"{job.budget_ether.normalize():f}"
    escrow = "yes" if job.escrowed else "no"
    role = job.role.value if job.viewer else "-"
    return f"  {job.id:>4}  {job.status_text:<18} {budget:>12}  {escrow:<6}  {role:<10}  {job.title}"


def print_jobs(snapshot: Snapshot):
    if snapshot.error is not None:
        status(f"{C_RED}!{C_RESET}", f"Could not load jobs: {snapshot.error}")
        return
    if not snapshot.jobs:
        print("  No jobs.")
        return
    print(f"  {'ID':>4}  {'STATUS':<18} {'BUDGET (ETH)':>12}  {'ESCROW':<6}  {'ROLE':<10}  TITLE")
    for job in snapshot.jobs:
        print(format_job(job))


def _scope(args) -> Scope:
    if getattr(args, "mine", False):
        return Scope.POSTED
    if getattr(args, "assigned", False):
        return Scope.ASSIGNED
    return Scope.LISTING


def _require_account(session: JobBoardSession):
    if not session.account:
        raise GuardViolationError("No account configured (set account, private_key or --account)")


# --- Commands ---

async def cmd_jobs(session, args) -> int:
    scope = _scope(args)
    if scope is not Scope.LISTING:
        _require_account(session)
    snapshot = await session.dashboard(scope).projector.refresh()
    print_jobs(snapshot)
    return 1 if snapshot.error else 0


async def cmd_show(session, args) -> int:
    projector = JobStateProjector(session.gateway, Scope.DETAIL, job_id=args.id)
    snapshot = await projector.refresh()
    job = snapshot.get(args.id)
    if job is None:
        status(f"{C_RED}!{C_RESET}", f"{snapshot.error or f'Job {args.id} not found'}")
        return 1
    description = await fetch_description(session.text_store, job.description_ref)
    print(f"  {C_BOLD}#{job.id} {job.title}{C_RESET}")
    print(f"  Status:     {job.status_text}")
    print(f"  Budget:     {job.budget_ether.normalize():f} ETH ({'escrowed' if job.escrowed else 'not escrowed'})")
    print(f"  Employer:   {job.employer}")
    print(f"  Freelancer: {job.freelancer or 'None'}")
    if job.viewer:
        print(f"  You are:    {job.role.value}")
    print()
    print(f"  {description}")
    actions = available_actions(job, session.account)
    if actions:
        print()
        print(f"  Actions: {', '.join(a.label.lower() for a in actions)}")
    return 0


async def cmd_post(session, args) -> int:
    _require_account(session)
    dashboard = session.dashboard(Scope.POSTED)
    job_id = await dashboard.post_job(args.title, args.desc, args.budget)
    status(f"{C_GREEN}✓{C_RESET}", f"Posted job #{job_id}: {args.title}")
    return 0


async def cmd_action(session, args) -> int:
    _require_account(session)
    action = ACTION_COMMANDS.get(args.command) or parse_action(args.command)
    view = session.job_detail(args.id)
    try:
        snapshot = await view.refresh()
        if view.job is None:
            status(f"{C_RED}!{C_RESET}", f"{snapshot.error or f'Job {args.id} not found'}")
            return 1
        record = await view.perform(action)
    finally:
        await view.close()
    if record.ok:
        status(f"{C_GREEN}✓{C_RESET}", record.message)
        job = view.job
        if job is not None:
            status(f"{C_DIM}▸{C_RESET}", f"Job #{job.id} is now {job.status_text}")
        return 0
    status(f"{C_RED}✗{C_RESET}", record.message)
    return 1


async def cmd_watch(session, args) -> int:
    scope = _scope(args)
    if scope is not Scope.LISTING:
        _require_account(session)
    dashboard = session.dashboard(scope)
    last = []

    async def reprint(snapshot: Snapshot):
        if snapshot.jobs != last or snapshot.error is not None:
            last[:] = snapshot.jobs
            print(f"\n  {C_DIM}-- {scope.value} --{C_RESET}")
            print_jobs(snapshot)

    dashboard.projector.add_listener(reprint)
    async with dashboard:
        status(f"{C_DIM}▸{C_RESET}", "Watching (Ctrl-C to stop)")
        await asyncio.Event().wait()
    return 0


async def cmd_chat(session, args) -> int:
    _require_account(session)
    view = session.job_detail(args.id)

    def show(msg):
        if msg.is_system:
            print(f"  {C_YELLOW}[System]{C_RESET} {msg.text}")
        else:
            print(f"  {C_CYAN}{msg.sender_display}{C_RESET}: {msg.text}")

    view.chat.add_listener(show)
    async with view:
        if not view.chat.open:
            job = view.job
            why = view.error or (f"job is {job.status_text}" if job else "job not loaded")
            status(f"{C_RED}!{C_RESET}", f"Chat not available: {why}")
            return 1
        if not view.chat.connected:
            status(f"{C_RED}!{C_RESET}", f"{view.chat.error}")
            return 1
        status(f"{C_DIM}▸{C_RESET}", f"Chat for job #{args.id} (Ctrl-D to leave)")
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            try:
                await view.send(line)
            except (GuardViolationError, ChatUnavailableError) as e:
                status(f"{C_RED}!{C_RESET}", str(e))
    return 0


COMMANDS = {
    "jobs": cmd_jobs,
    "show": cmd_show,
    "post": cmd_post,
    "watch": cmd_watch,
    "chat": cmd_chat,
    **{name: cmd_action for name in ACTION_COMMANDS},
}


# --- Main ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobboard", description="Escrowed job marketplace client")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--sim", action="store_true", help="Use the simulated chain")
    parser.add_argument("--sim-db", help="Simulated chain database file")
    parser.add_argument("--account", help="Act as this address")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint")
    parser.add_argument("--contract", help="JobBoard contract address")
    parser.add_argument("--relay-url", help="Chat relay WebSocket URL")
    parser.add_argument("-y", "--yes", action="store_true", help="Sign without asking")
    sub = parser.add_subparsers(dest="command")

    for name in ("jobs", "watch"):
        p = sub.add_parser(name)
        group = p.add_mutually_exclusive_group()
        group.add_argument("--mine", action="store_true", help="Jobs you posted")
        group.add_argument("--assigned", action="store_true", help="Jobs assigned to you")

    sub.add_parser("show").add_argument("id", type=int)
    sub.add_parser("chat").add_argument("id", type=int)
    for name in ACTION_COMMANDS:
        sub.add_parser(name).add_argument("id", type=int)

    p = sub.add_parser("post")
    p.add_argument("title")
    p.add_argument("budget", help="Budget in ETH")
    p.add_argument("--desc", required=True, help="Job description")

    p = sub.add_parser("relay")
    p.add_argument("--host", default=os.environ.get("JOBBOARD_RELAY_HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=int(os.environ.get("JOBBOARD_RELAY_PORT", "3001")))

    sub.add_parser("init")
    return parser


def apply_flags(cfg: dict, args) -> dict:
    if args.sim:
        cfg["sim"] = True
    if args.sim_db:
        cfg["sim_db"] = args.sim_db
    if args.account:
        cfg["account"] = args.account
    if args.rpc_url:
        cfg["rpc_url"] = args.rpc_url
    if args.contract:
        cfg["contract_address"] = args.contract
    if args.relay_url:
        cfg["relay_url"] = args.relay_url
    return cfg


async def _run(cfg, args) -> int:
    session = build_session(cfg, assume_yes=args.yes)
    try:
        return await COMMANDS[args.command](session, args)
    finally:
        await session.close()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        print(__doc__.strip())
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init":
        generate_config()
        return 0
    if args.command == "relay":
        import run_relay
        run_relay.main(host=args.host, port=args.port, verbose=args.verbose)
        return 0

    cfg = apply_flags(load_config(), args)
    try:
        return asyncio.run(_run(cfg, args))
    except KeyboardInterrupt:
        status(f"{C_DIM}▸{C_RESET}", "Stopped.")
        return 130
    except (JobBoardError, ValueError) as e:
        status(f"{C_RED}✗{C_RESET}", str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
