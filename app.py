from __future__ import annotations

import argparse
import getpass
import json
import sys
from typing import List, Optional

from tenantguard.core.access.audit import AccessAuditLogger
from tenantguard.core.access.engine import AccessControlEngine
from tenantguard.core.auth.backends import HttpAuthBackend
from tenantguard.core.auth.notifications import LoggingNotificationSink
from tenantguard.core.config.loader import DEFAULT_CONFIG_PATH, load_config
from tenantguard.core.errors import TenantGuardError
from tenantguard.core.identity.models import Actor
from tenantguard.core.impersonation.audit_sink import JsonlImpersonationAuditSink
from tenantguard.core.logger import setup_logging
from tenantguard.core.modules.defaults import default_module_catalog
from tenantguard.core.modules.registry import ModuleRegistry
from tenantguard.core.tenantguard_app import TenantGuardApp


def _registry(cfg, logger) -> ModuleRegistry:
    reg = ModuleRegistry(operator_modules=cfg.access.operator_modules, tenant_modules=cfg.access.tenant_modules, logger=logger)
    for desc in default_module_catalog():
        if reg.classify(desc.name) == desc.classification:
            reg.register(desc)
    return reg


def cmd_print_config(args, cfg, logger) -> int:
    print(json.dumps(cfg.model_dump(mode="json"), indent=2, sort_keys=True))
    return 0


def cmd_init_modules(args, cfg, logger) -> int:
    reg = _registry(cfg, logger)
    summary = reg.initialize_all()
    print(json.dumps(summary.model_dump(mode="json"), indent=2))
    return 0 if summary.ok else 1


def cmd_check_access(args, cfg, logger) -> int:
    try:
        actor = Actor(
            id=args.actor_id,
            tenant_id=args.tenant,
            is_operator=bool(args.operator),
            role=args.role,
            granted_permissions=frozenset(args.grant or []),
        )
    except ValueError as e:
        print(f"Invalid actor: {e}", file=sys.stderr)
        return 2
    reg = _registry(cfg, logger)
    engine = AccessControlEngine(registry=reg, audit=AccessAuditLogger(path=cfg.logging.security_log), logger=logger)
    if args.module:
        dec = engine.can_access(actor, args.module, trace_id="cli")
        print(json.dumps(dec.model_dump(mode="json"), indent=2))
        return 0 if dec.allowed else 1
    print("\n".join(d.name for d in engine.list_accessible_modules(actor)))
    return 0


def cmd_login(args, cfg, logger) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    app = TenantGuardApp(
        auth_backend=HttpAuthBackend(base_url=args.base_url),
        cfg=cfg,
        notifier=LoggingNotificationSink(logger),
        audit_sink=JsonlImpersonationAuditSink(path=cfg.logging.impersonation_log),
        access_audit=AccessAuditLogger(path=cfg.logging.security_log),
        logger=logger,
    )
    app.init(restore=False)
    try:
        actor = app.login({"username": args.username, "password": password})
        print(f"Signed in as {actor.id} ({actor.scope}).")
        print("Accessible modules:")
        for name in app.list_accessible_modules():
            print(f"  - {name}")
        info = app.get_session_info()
        print(f"Session valid for {int(info.time_until_expiry)}s.")
    except TenantGuardError as e:
        print(e.user_message, file=sys.stderr)
        return 1
    finally:
        app.logout()
        app.teardown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="tenantguard: session lifecycle and module access control")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to tenantguard.json.")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("print-config", help="Print the effective configuration.")
    sub.add_parser("init-modules", help="Register and initialize the stock module catalog.")

    p_check = sub.add_parser("check-access", help="Evaluate module access for an ad-hoc actor.")
    p_check.add_argument("--actor-id", default="cli-actor")
    p_check.add_argument("--operator", action="store_true", help="Actor is a platform operator.")
    p_check.add_argument("--tenant", default=None, help="Tenant id for tenant-scoped actors.")
    p_check.add_argument("--role", default="user")
    p_check.add_argument("--grant", action="append", help="Granted permission key (repeatable).")
    p_check.add_argument("module", nargs="?", help="Module key; omit to list accessible modules.")

    p_login = sub.add_parser("login", help="Sign in against an HTTP auth backend and list accessible modules.")
    p_login.add_argument("--base-url", required=True)
    p_login.add_argument("--username", required=True)
    p_login.add_argument("--password", default=None, help="Prompted when omitted.")

    args = ap.parse_args(argv)
    try:
        cfg = load_config(args.config)
    except TenantGuardError as e:
        print(e.user_message, file=sys.stderr)
        return 2
    logger = setup_logging(cfg.logging.log_dir, level=cfg.logging.level, console=False)

    handlers = {
        "print-config": cmd_print_config,
        "init-modules": cmd_init_modules,
        "check-access": cmd_check_access,
        "login": cmd_login,
    }
    return handlers[args.command](args, cfg, logger)


if __name__ == "__main__":
    raise SystemExit(main())
