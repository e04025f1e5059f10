#!/usr/bin/env python3
# sqlpie.py
# Find/replace over SQL dumps that keeps PHP serialized string lengths valid.
"""
sqlpie.py — serialized-string-aware find & replace for SQL dumps

WHAT IT DOES
- Reads a whole SQL dump (UTF-8) into memory.
- Finds every PHP serialized string token `s:<len>:"<value>";` that sits right
  after a `;`, `{` or `}` (the way they appear inside serialized arrays).
- For each token the find pattern touches:
  • substitutes find -> replace inside the token
  • recomputes the byte length of the new value
  • patches `s:<old len>:"<old value>"` -> `s:<new len>:"<new value>"`
- Then runs an ordinary global find/replace over the rest of the dump.
- Writes the result once, only after every stage succeeded.

REQUIREMENTS
- Python 3.8+
- `colorama` (colors):                 pip install colorama
- `rich` (banner + progress bar):      pip install rich

BASIC USAGE
    python sqlpie.py -i dump.sql -o fixed.sql -f example.com -r example.org
Options:
    -v, --verbose [bool]  Print counts and a progress bar (bare -v means true)
    --ignore-case         Case-insensitive find
    --anywhere            Also pick up serialized strings that are not preceded
                          by ; { or } (start of dump, after spaces, quotes ...)
    --dry-run             Show the serialized rewrite plan, write nothing
    --backup              Copy an existing output file to a timestamped .bak
                          before overwriting it

PATTERNS
- `--find` is a Python regular expression, compiled multi-line for counting and
  for the plain pass (^ and $ match at every line).
- `--replace` is a $-template: `$1`..`$99` group refs, `$&` whole match,
  `` $` `` / `$'` text before/after the match, `$$` a literal dollar sign.
  Backslashes are literal.

SAFETY NOTES (read this)
- Token discovery is a regex heuristic, not a PHP unserializer. Values that
  contain an unescaped `"` followed later by `;` confuse it.
- The token right after another token (`{s:1:"k";s:1:"v";}`) shares its `;`
  with the previous match and is not discovered in the default mode.
- A rewrite that would empty a serialized string is skipped; the original token
  is left in place.
- Existing length mismatches in the dump are not repaired, only the lengths of
  tokens this tool rewrites.

EXAMPLES
Move a WordPress site to a new domain:
    python sqlpie.py -i wp.sql -o wp-new.sql -f "https?://old\\.example\\.com" \
        -r "https://new.example.com" -v
Reuse a captured group:
    python sqlpie.py -i wp.sql -o wp-new.sql -f "(cdn|static)\\.old\\.com" -r '$1.new.com'
"""

import argparse, os, re, shutil, sys, time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional
from colorama import init, Fore, Style
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich import box
init(autoreset=True)

__version__ = "1.0.0"

_console = Console()

# ---- Banner (verbose runs only) ----
def show_banner():
    ascii_logo = r"""
  __|   _ \  |      _ \ _ _|  __|
\__ \  (   | |      __/   |   _|
____/ \__\_\____|  _|   ___| ___|
"""
    _console.print(
        Panel.fit(
            ascii_logo,
            title=f"sqlpie {__version__}",
            title_align="center",
            border_style="bold cyan",
            box=box.ROUNDED,
            padding=(1, 2),
        )
    )

# ---------- Errors ----------
class SqlPieError(Exception):
    """Base class for failures that abort a run."""

class MissingInputError(SqlPieError):
    """Input path is missing, not a regular file, or empty."""

class MalformedTokenError(SqlPieError):
    """A scanned serialized string did not split into length and value."""

# ---------- Patterns ----------
# A serialized string right after a statement/array/object delimiter.
TOKEN_RE = re.compile(r'[;{}]s:([0-9]+):"([^"]+)";')
# --anywhere: any token not glued to a word character.
ANYWHERE_TOKEN_RE = re.compile(r'(?<!\w)s:([0-9]+):"([^"]+)";')
TOKEN_PARTS_RE = re.compile(r'^(.?)s:([0-9]+):"(.*)";$', re.DOTALL)
# The substituted span may have lost its delimiters; any char is fine there.
REWRITTEN_PARTS_RE = re.compile(r'^(.?)s:[0-9]+:"(.*)".$', re.DOTALL)
TEMPLATE_REF_RE = re.compile(r"\$(\$|&|`|'|[0-9]{1,2})")

def compile_find(find: str, multiline: bool = False, ignore_case: bool = False):
    flags = re.MULTILINE if multiline else 0
    if ignore_case:
        flags |= re.IGNORECASE
    return re.compile(find, flags)

def compile_template(replace: str) -> Callable:
    """Build an ``re.sub`` callback that expands a $-style replacement template.

    Group references that do not exist are kept literally, groups that did not
    participate in the match expand to an empty string.
    """
    if "$" not in replace:
        return lambda m: replace

    def expand(m):
        def ref(t):
            tok = t.group(1)
            if tok == "$": return "$"
            if tok == "&": return m.group(0)
            if tok == "`": return m.string[:m.start()]
            if tok == "'": return m.string[m.end():]
            groups = m.re.groups
            if len(tok) == 2 and 1 <= int(tok) <= groups:
                return m.group(int(tok)) or ""
            if 1 <= int(tok[0]) <= groups:
                return (m.group(int(tok[0])) or "") + tok[1:]
            return t.group(0)
        return TEMPLATE_REF_RE.sub(ref, replace)
    return expand

def count_matches(find: str, source: str, ignore_case: bool = False) -> int:
    """Count non-overlapping multi-line matches of ``find`` in ``source``."""
    return sum(1 for _ in compile_find(find, multiline=True, ignore_case=ignore_case).finditer(source))

def with_commas(num: int) -> str:
    return f"{num:,}"

def byte_len(s: str) -> int:
    return len(s.encode("utf-8"))

# ---------- Serialized tokens ----------
@dataclass
class SerializedToken:
    source: str          # exact matched text, delimiter and trailing ';' included
    length: int          # declared length as written in the dump
    value: str
    offset: int = 0
    matched: bool = False
    rewrite_value: Optional[str] = None
    rewrite_length: int = 0

    @property
    def key(self) -> str:
        return f's:{self.length}:"{self.value}"'

    @property
    def rewrite_key(self) -> str:
        return f's:{self.rewrite_length}:"{self.rewrite_value}"'

def find_serialized_strings(sql: str, anywhere: bool = False) -> List[SerializedToken]:
    """Scan ``sql`` for serialized string tokens, in order of appearance.

    Matches do not overlap, so a token whose only delimiter is the closing ``;``
    of the previous token is skipped in the default mode.
    """
    pattern = ANYWHERE_TOKEN_RE if anywhere else TOKEN_RE
    tokens = []
    for m in pattern.finditer(sql):
        parts = TOKEN_PARTS_RE.match(m.group(0))
        if parts is None:
            raise MalformedTokenError(f"cannot split serialized string at offset {m.start()}: {m.group(0)!r}")
        tokens.append(SerializedToken(source=parts.group(0), length=int(parts.group(2)),
                                      value=parts.group(3), offset=m.start()))
    return tokens

def plan_rewrites(tokens: List[SerializedToken], find: str, replace: str,
                  ignore_case: bool = False) -> List[SerializedToken]:
    """Work out the new value and byte length of every token ``find`` touches.

    ``find`` is tested against the whole source span, delimiters and length
    prefix included, not just the value. Tokens are marked ``matched`` when it
    hits. Only tokens whose rewritten value is non-empty (and still parses as a
    serialized string) are returned, in scan order.
    """
    pattern = compile_find(find, ignore_case=ignore_case)
    expand = compile_template(replace)
    planned = []
    for token in tokens:
        token.matched = False
        token.rewrite_value, token.rewrite_length = None, 0
        if not pattern.search(token.source):
            continue
        token.matched = True
        parts = REWRITTEN_PARTS_RE.match(pattern.sub(expand, token.source))
        if parts is None:
            continue
        token.rewrite_value = parts.group(2)
        token.rewrite_length = byte_len(token.rewrite_value)
        # an emptied string is left alone rather than written as s:0:"";
        if token.rewrite_length != 0:
            planned.append(token)
    return planned

def patch_serialized_strings(sql: str, plan: List[SerializedToken],
                             progress: Optional[Callable[[int, int], None]] = None) -> str:
    """Swap each planned ``s:N:"V"`` for its rewrite, first occurrence only, in plan order."""
    total = len(plan)
    for idx, token in enumerate(plan, 1):
        sql = sql.replace(token.key, token.rewrite_key, 1)
        if progress:
            progress(idx, total)
    return sql

def rewrite_plain(sql: str, find: str, replace: str, ignore_case: bool = False) -> str:
    if count_matches(find, sql, ignore_case) == 0:
        return sql
    pattern = compile_find(find, multiline=True, ignore_case=ignore_case)
    return pattern.sub(compile_template(replace), sql)

# ---------- Reporting ----------
class Reporter:
    """Receives counts and patch progress from the pipeline. Silent by default."""

    def stat(self, label: str, value) -> None:
        pass

    def progress(self, current: int, total: int) -> None:
        pass

class ConsoleReporter(Reporter):
    """Verbose output: colored stat lines and a rich progress bar while patching."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or _console
        self._bar = None
        self._task = None

    def stat(self, label, value):
        if isinstance(value, int):
            value = with_commas(value)
        print(Fore.CYAN + f"{label}: {value}" + Style.RESET_ALL)

    def progress(self, current, total):
        if self._bar is None:
            self._bar = Progress(
                TextColumn("REWRITING STRINGS: {task.fields[current]} of {task.fields[outof]}"),
                BarColumn(bar_width=40),
                TextColumn("| {task.percentage:>3.0f}%"),
                console=self.console,
            )
            self._bar.start()
            self._task = self._bar.add_task("rewrite", total=total, current="0", outof=with_commas(total))
        self._bar.update(self._task, completed=current, current=with_commas(current))
        if current >= total:
            self._bar.stop()
            self._bar = None

def color_highlight(text: str, find: str, ignore_case: bool) -> str:
    pattern = compile_find(find, ignore_case=ignore_case)
    return pattern.sub(lambda m: Fore.YELLOW + Style.BRIGHT + m.group(0) + Style.RESET_ALL, text)

def show_plan(plan: List[SerializedToken], find: str, ignore_case: bool):
    if not plan:
        print(Fore.YELLOW + "No serialized strings to rewrite." + Style.RESET_ALL); return
    for idx, token in enumerate(plan, 1):
        print(Fore.CYAN + f"[{idx}] offset {token.offset}" + Style.RESET_ALL)
        print("  Old: " + color_highlight(token.key, find, ignore_case))
        print(f"  New: {Fore.GREEN}{token.rewrite_key}{Style.RESET_ALL}")

# ---------- Pipeline ----------
class Stage(Enum):
    INIT = "init"
    RESERIALIZE = "reserialize"
    REWRITE = "rewrite"
    FINISH = "finish"

@dataclass
class RewriteJob:
    input: str
    output: str
    find: str
    replace: str
    verbose: bool = False
    ignore_case: bool = False
    anywhere: bool = False
    dry_run: bool = False
    backup: bool = False

@dataclass
class RewriteResult:
    sql: str
    stage: Stage = Stage.INIT
    matches: int = 0
    serialized_strings: int = 0
    serialized_matches: int = 0
    plan: List[SerializedToken] = field(default_factory=list)
    post_matches: int = 0
    backup_path: Optional[str] = None

def read_sql(path: str) -> str:
    if not os.path.isfile(path):
        raise MissingInputError(f"MISSING SQL: '{path}' not found.")
    try:
        with open(path, encoding="utf-8", newline="") as f:
            sql = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise MissingInputError(f"MISSING SQL: cannot read '{path}': {e}") from e
    if not sql:
        raise MissingInputError(f"MISSING SQL: '{path}' is empty.")
    return sql

def write_sql(path: str, sql: str):
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(sql)

# ---------- Backups (timestamp + numeric suffix) ----------
def unique_backup_name(path: str) -> str:
    base = f"{path}.{time.strftime('%Y%m%d-%H%M%S')}.bak"
    if not os.path.exists(base):
        return base
    n = 1
    while True:
        cand = f"{base}-{n}"
        if not os.path.exists(cand):
            return cand
        n += 1

def ensure_backup(path: str) -> str:
    bak = unique_backup_name(path)
    shutil.copy2(path, bak)
    return bak

def reserialize(result: RewriteResult, find: str, replace: str, ignore_case: bool = False,
                anywhere: bool = False, reporter: Optional[Reporter] = None) -> RewriteResult:
    reporter = reporter or Reporter()
    result.stage = Stage.RESERIALIZE
    if count_matches(find, result.sql, ignore_case) == 0:
        return result
    tokens = find_serialized_strings(result.sql, anywhere=anywhere)
    result.serialized_strings = len(tokens)
    reporter.stat("SERIALIZED STRINGS", result.serialized_strings)
    result.plan = plan_rewrites(tokens, find, replace, ignore_case=ignore_case)
    result.serialized_matches = sum(1 for t in tokens if t.matched)
    reporter.stat("SERIALIZED MATCHES", result.serialized_matches)
    if result.plan:
        result.sql = patch_serialized_strings(result.sql, result.plan, progress=reporter.progress)
    return result

def rewrite(result: RewriteResult, find: str, replace: str, ignore_case: bool = False) -> RewriteResult:
    result.stage = Stage.REWRITE
    result.sql = rewrite_plain(result.sql, find, replace, ignore_case)
    return result

def rewrite_sql(sql: str, find: str, replace: str, ignore_case: bool = False, anywhere: bool = False,
                reporter: Optional[Reporter] = None) -> RewriteResult:
    """Run the in-memory part of the pipeline: serialized strings first, then the plain pass."""
    result = RewriteResult(sql=sql, matches=count_matches(find, sql, ignore_case))
    reserialize(result, find, replace, ignore_case, anywhere, reporter)
    rewrite(result, find, replace, ignore_case)
    result.post_matches = count_matches(find, result.sql, ignore_case)
    return result

def run_pipeline(job: RewriteJob, reporter: Optional[Reporter] = None) -> RewriteResult:
    """Read, rewrite and write one dump. Nothing is written if any stage fails."""
    reporter = reporter or Reporter()
    sql = read_sql(job.input)
    result = RewriteResult(sql=sql, matches=count_matches(job.find, sql, job.ignore_case))
    reporter.stat("INPUT", job.input)
    reporter.stat("FIND", job.find)
    reporter.stat("REPLACE", job.replace)
    reporter.stat("MATCHES", result.matches)

    reserialize(result, job.find, job.replace, job.ignore_case, job.anywhere, reporter)
    rewrite(result, job.find, job.replace, job.ignore_case)

    result.stage = Stage.FINISH
    result.post_matches = count_matches(job.find, result.sql, job.ignore_case)
    if job.dry_run:
        show_plan(result.plan, job.find, job.ignore_case)
    else:
        if job.backup and os.path.exists(job.output):
            result.backup_path = ensure_backup(job.output)
            reporter.stat("BACKUP", result.backup_path)
        write_sql(job.output, result.sql)
    reporter.stat("POST MATCHES", result.post_matches)
    if not job.dry_run:
        reporter.stat("OUTPUT", job.output)
    return result

# ---------- CLI ----------
def parse_bool(value) -> bool:
    value = "" if value is None else str(value)
    return value.strip().lower() in ("1", "true")

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="sqlpie", description="Find/replace in SQL dumps without breaking PHP serialized string lengths.")
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-i", "--input", metavar="INPUT_FILE", help="Input File")
    ap.add_argument("-o", "--output", metavar="OUTPUT_FILE", help="Output File")
    ap.add_argument("-f", "--find", metavar="FIND_STRING", help="Find String (regular expression)")
    ap.add_argument("-r", "--replace", metavar="REPLACE_STRING", help="Replace String ($1, $& ... allowed)")
    ap.add_argument("-v", "--verbose", nargs="?", const=True, default=False, type=parse_bool, metavar="BOOLEAN", help="Verbose Output")
    ap.add_argument("--ignore-case", action="store_true", help="Case-insensitive find")
    ap.add_argument("--anywhere", action="store_true", help="Match serialized strings not preceded by ; { or }")
    ap.add_argument("--dry-run", action="store_true", help="Show the serialized rewrite plan, do not write output")
    ap.add_argument("--backup", action="store_true", help="Back up an existing output file before overwriting it")
    return ap

def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    if not all((args.input, args.output, args.find, args.replace)):
        ap.print_help()
        return 0

    job = RewriteJob(input=args.input, output=args.output, find=args.find, replace=args.replace,
                     verbose=args.verbose, ignore_case=args.ignore_case, anywhere=args.anywhere,
                     dry_run=args.dry_run, backup=args.backup)
    reporter = ConsoleReporter() if job.verbose else Reporter()
    if job.verbose:
        show_banner()
    try:
        run_pipeline(job, reporter)
    except (SqlPieError, re.error, OSError) as e:
        print(Fore.RED + f"Error: {e}" + Style.RESET_ALL, file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
