"""Critical-error detection for server output.

Detection is a two-stage function: a fixed base predicate for OS/runtime level
failures that are critical under every framework, then a per-framework
``(exclusions, inclusions)`` profile. Exclusions always win over inclusions.
Anything matching neither list is not critical: a false alarm interrupts the
developer's terminal, a missed one is still in the log file.

FATAL and PANIC are not base signals here. They are listed in every profile's
inclusions, so a profile exclusion (a "warning" on the same line, say) vetoes
them the way it vetoes any other inclusion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from re import Pattern


def _compile(*patterns: str, flags: int = 0) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


BASE_PATTERNS: tuple[Pattern[str], ...] = (
    # Ports and filesystem.
    *_compile(r"EADDRINUSE", r"Address already in use", r"EACCES", r"EPERM\b", r"ENOENT"),
    # Network.
    *_compile(r"ECONNREFUSED", r"ETIMEDOUT", r"ENOTFOUND"),
    # Process / runtime.
    *_compile(r"out of memory", r"segmentation fault", r"stack overflow", flags=re.IGNORECASE),
    *_compile(r"Maximum call stack size exceeded", r"SIGSEGV", r"SIGKILL", r"SIGTERM", r"SIGABRT"),
)

# Severity markers shared by every profile. They sit in the inclusion stage so
# a profile exclusion can still veto a benign "FATAL" line.
SEVERITY_MARKERS: tuple[Pattern[str], ...] = _compile(r"FATAL", r"PANIC")


def is_base_critical(message: str) -> bool:
    return any(p.search(message) for p in BASE_PATTERNS)


@dataclass(frozen=True, slots=True)
class ErrorProfile:
    name: str
    exclusions: tuple[Pattern[str], ...]
    inclusions: tuple[Pattern[str], ...]


DEFAULT_PROFILE = ErrorProfile(
    name="default",
    exclusions=(*_compile(r"warning", r"deprecated", flags=re.IGNORECASE), *_compile(r"WARN")),
    inclusions=(
        *_compile(
            r"Cannot find module",
            r"Module not found",
            r"Package not found",
            r"SyntaxError",
            r"Parse error",
            r"Unexpected token",
        ),
        *SEVERITY_MARKERS,
    ),
)

RAILS_PROFILE = ErrorProfile(
    name="rails",
    exclusions=(
        *_compile(r"DEPRECATION WARNING", r"asset.*not found", r"Precompiling assets", flags=re.IGNORECASE),
        *_compile(r"^\s*(?:I|D|W),\s*\[", r"^\s*(?:INFO|DEBUG|WARN(?:ING)?)\b:?"),
    ),
    inclusions=(
        # Gems and dependencies.
        *_compile(r"LoadError", r"Bundler::.*Error", r"Gem::.*Error"),
        *_compile(r"could not find gem", r"bundle.*install.*required", flags=re.IGNORECASE),
        # Boot and configuration.
        *_compile(
            r"SyntaxError.*(?:config|application|boot)",
            r"NameError.*(?:config|application|boot)",
            r"Rails.*application.*failed.*initialize",
            r"configuration.*error",
            r"invalid.*configuration",
            flags=re.IGNORECASE,
        ),
        *_compile(r"NameError: (?:undefined local variable|uninitialized constant)"),
        # Database.
        *_compile(
            r"ActiveRecord::ConnectionNotEstablished",
            r"ActiveRecord::NoDatabaseError",
            r"ActiveRecord::PendingMigrationError",
            r"PG::ConnectionBad",
            r"Mysql2::Error::ConnectionError",
            r"Redis::.*Error",
        ),
        *_compile(
            r"database.*does not exist",
            r"connection.*refused.*database",
            r"ActiveRecord::StatementInvalid.*migration",
            r"database.*migration.*failed",
            flags=re.IGNORECASE,
        ),
        # Server startup.
        *_compile(
            r"server.*failed.*start",
            r"rails.*server.*error",
            r"Puma.*failed.*start",
            r"Unicorn.*failed.*start",
            flags=re.IGNORECASE,
        ),
        *SEVERITY_MARKERS,
    ),
)

NEXTJS_PROFILE = ErrorProfile(
    name="nextjs",
    exclusions=_compile(
        r"generateStaticParams",
        r"\.next",
        r"Fast Refresh",
        r"warn  -",
        r"Compiling",
        r"Compiled",
        r"Ready in",
        r"\.map\b",
        r"Waiting for the changes",
    ),
    inclusions=(
        *_compile(
            r"Module not found: Can't resolve",
            r"SyntaxError:",
            r"TypeError:",
            r"ReferenceError:",
            r"Build error occurred",
            r"Failed to compile",
            r"Cannot find module",
            r"FATAL ERROR:",
            r"Unhandled Runtime Error",
            r"Error occurred prerendering",
        ),
        *SEVERITY_MARKERS,
    ),
)

DJANGO_PROFILE = ErrorProfile(
    name="django",
    exclusions=_compile(
        r"WARNING:",
        r"INFO:",
        r"DEBUG:",
        r"Watching for file changes",
        r"Performing system checks",
        r"System check identified",
        r"migrations",
        r"collectstatic",
    ),
    inclusions=(
        *_compile(
            r"django\.core\.exceptions\.",
            r"ImportError:",
            r"ModuleNotFoundError:",
            r"SyntaxError:",
            r"IndentationError:",
            r"AttributeError:",
            r"KeyError:",
            r"ValueError:",
            r"TypeError:",
            r"OperationalError:",
            r"ProgrammingError:",
            r"IntegrityError:",
            r"DataError:",
            r"ValidationError:",
            r"PermissionDenied:",
            r"Http404:",
        ),
        *SEVERITY_MARKERS,
    ),
)

EXPRESS_PROFILE = ErrorProfile(
    name="express",
    exclusions=_compile(
        r"DeprecationWarning: (?!.*\(node:)",
        r"\(node:\d+\) \[DEP",
        r"morgan",
        r"Server listening",
        r"Listening on",
        r"nodemon",
        r"restarting due to changes",
        r"watching for changes",
    ),
    inclusions=(
        *_compile(
            r"Error:",
            r"Cannot find module",
            r"UnhandledPromiseRejection",
            r"FATAL ERROR",
            r"DeprecationWarning:.*\(node:",
            r"MongoError:",
            r"SequelizeError:",
        ),
        *SEVERITY_MARKERS,
    ),
)

PROFILES: dict[str, ErrorProfile] = {
    profile.name: profile
    for profile in (DEFAULT_PROFILE, RAILS_PROFILE, NEXTJS_PROFILE, DJANGO_PROFILE, EXPRESS_PROFILE)
}


@dataclass(frozen=True, slots=True)
class ErrorDetector:
    profile: ErrorProfile = DEFAULT_PROFILE

    @property
    def framework(self) -> str:
        return self.profile.name

    def is_critical(self, message: str) -> bool:
        if is_base_critical(message):
            return True
        if any(p.search(message) for p in self.profile.exclusions):
            return False
        return any(p.search(message) for p in self.profile.inclusions)


def create_error_detector(framework: str) -> ErrorDetector:
    try:
        return ErrorDetector(PROFILES[framework])
    except KeyError:
        raise ValueError(f"Unsupported framework: {framework}") from None


__all__ = [
    "BASE_PATTERNS",
    "PROFILES",
    "ErrorDetector",
    "ErrorProfile",
    "create_error_detector",
    "is_base_critical",
]
