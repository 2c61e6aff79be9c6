#!/usr/bin/env python3
"""
dbos-treesitter - AST-Based DBOS Determinism & SQL Injection Linter
===================================================================
A structural analysis linter for DBOS TypeScript/JavaScript applications using
tree-sitter AST parsing.

Features:
- TypeScript/TSX/JavaScript AST parsing via tree-sitter (with error recovery)
- Workflow determinism checks: global mutation, banned calls (Date, Math.random,
  console.log, setTimeout, bcrypt), awaits on non-DBOS types
- SQL injection detection on raw-query clients (Knex, Prisma, pg, TypeORM)
  with literal-reducibility tracing across reassignments
- Scope- and type-aware resolution (shadowing, hoisting, generic contexts)
- Rich terminal UI with syntax highlighting

Requirements:
    pip install tree-sitter tree-sitter-javascript tree-sitter-typescript rich pyyaml loguru

Usage:
    dbos-treesitter src/operations.ts
    dbos-treesitter /path/to/app --verbose
    dbos-treesitter src/ --output json -o report.json
"""

import os
import re
import sys
import json
import argparse
import time
from pathlib import Path
from typing import List, Dict, Optional, Tuple
from datetime import datetime
from collections import Counter

from loguru import logger

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree
from rich.syntax import Syntax
from rich.text import Text
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, MofNCompleteColumn
from rich import box

from dbos_ast import EXTENSION_DIALECTS, UnsupportedFileError
from dbos_config import ConfigError, DbosLintConfig, load_config
from dbos_rules import (
    CATEGORY_SEVERITY, DEFAULT_POLICY, RULE_DESCRIPTION, RULE_NAME, SEVERITY_ORDER, Diagnostic,
    LintError, Policy, RuleCategory, Severity, analyze_source, rule_catalog,
)

__version__ = "0.3.0"

console = Console()

SEVERITY_STYLES = {'CRITICAL': 'bold red', 'HIGH': 'red', 'MEDIUM': 'yellow', 'LOW': 'green'}


# ============================================================================
# Rich Output
# ============================================================================

SEVERITY_BADGES = {'CRITICAL': 'bold white on red', 'HIGH': 'bold red',
                   'MEDIUM': 'bold yellow', 'LOW': 'bold green'}


def summarize(findings: List[Diagnostic]) -> Tuple[Counter, Counter]:
    """Finding counts by severity and by category."""
    by_severity = Counter(f.severity.value for f in findings)
    by_category = Counter(f.category.value for f in findings)
    return by_severity, by_category


def _print_banner():
    console.print()
    console.rule(f"[bold yellow]dbos-treesitter[/bold yellow] [dim]v{__version__}[/dim]", style="yellow")
    console.print(Text(RULE_DESCRIPTION, style="dim"), justify="center")
    console.print()


def _build_summary(findings: List[Diagnostic], file_count: int, elapsed: float) -> Table:
    by_severity, by_category = summarize(findings)
    table = Table(box=box.SIMPLE_HEAD, caption=f"{file_count} file(s) in {elapsed:.2f}s",
                  caption_style="dim")
    table.add_column("Severity", no_wrap=True)
    table.add_column("Category", style="cyan")
    table.add_column("Findings", justify="right")
    for category in sorted(by_category, key=lambda c: -by_category[c]):
        sev = CATEGORY_SEVERITY[RuleCategory(category)].value
        table.add_row(Text(sev, style=SEVERITY_STYLES[sev]), category,
                      str(by_category[category]))
    table.add_row("", Text("total", style="bold"), Text(str(sum(by_severity.values())), style="bold"))
    return table


def _syntax_lexer(file_path: str) -> str:
    return "javascript" if EXTENSION_DIALECTS.get(Path(file_path).suffix.lower()) == 'javascript' else "typescript"


def _snippet(f: Diagnostic, source_code: Optional[str]) -> Optional[Syntax]:
    lexer = _syntax_lexer(f.file_path)
    if source_code:
        lines = source_code.split('\n')
        start = max(0, f.line_number - 3)
        return Syntax('\n'.join(lines[start:f.line_number + 2]), lexer, theme="monokai",
                      line_numbers=True, start_line=start + 1, highlight_lines={f.line_number})
    if f.line_content:
        return Syntax(f.line_content, lexer, theme="monokai", line_numbers=True, start_line=f.line_number)
    return None


def _build_finding_panel(f: Diagnostic, source_code: Optional[str] = None) -> Panel:
    sev = f.severity.value
    title = Text()
    title.append(f" {sev} ", style=SEVERITY_BADGES[sev])
    title.append(f" {f.message_id} ", style="bold white")
    if f.cwe_id:
        title.append(f" {f.cwe_id} ", style="dim cyan")

    facts = Table.grid(padding=(0, 2))
    facts.add_column(style="bold cyan", no_wrap=True)
    facts.add_column()
    facts.add_row("at", f"line {f.line_number}, col {f.col_offset}")
    if f.source:
        # sqlInjection: where the non-literal value comes from
        facts.add_row("root cause", f"line {f.source_line}: {f.source[:80]}")

    parts = [facts, Text(f"\n{f.message}", style="italic")]
    if f.taint_chain:
        chain = Tree("[bold cyan]traced through[/bold cyan]", guide_style="cyan")
        for hop in f.taint_chain[:-1]:
            chain.add(hop)
        chain.add(Text(f.taint_chain[-1], style="bold red"))
        parts.append(chain)
    snippet = _snippet(f, source_code)
    if snippet is not None:
        parts.extend([Text(""), snippet])

    return Panel(Group(*parts), title=title, title_align="left",
                 border_style=SEVERITY_STYLES[sev], box=box.ROUNDED, padding=(0, 1))


def output_rich(findings: List[Diagnostic], target: str, file_count: int,
                elapsed: float, min_severity: str):
    console.print(f"[bold cyan]target[/bold cyan] {target}   "
                  f"[bold cyan]min severity[/bold cyan] {min_severity}")
    console.print(_build_summary(findings, file_count, elapsed))

    if not findings:
        console.print("[bold green]No DBOS rule violations found.[/bold green]")
        return

    current_file = None
    source = None
    for f in sorted(findings, key=lambda x: (x.file_path, x.line_number, x.col_offset)):
        if f.file_path != current_file:
            current_file = f.file_path
            source = read_file(current_file)
            console.rule(f"[bold]{current_file}[/bold]", style="cyan", align="left")
        console.print(_build_finding_panel(f, source_code=source))


def output_rules(policy: Policy):
    table = Table(title=f"{RULE_NAME}: {RULE_DESCRIPTION}", box=box.ROUNDED, show_lines=False)
    table.add_column("Message ID", style="bold cyan", no_wrap=True)
    table.add_column("Message", style="white")
    for message_id, template in rule_catalog(policy).items():
        table.add_row(message_id, template)
    console.print(table)


def output_text_plain(findings: List[Diagnostic], file_path: str):
    """One `file:line:col: SEVERITY id: message` line per finding, compiler style."""
    with open(file_path, 'w', encoding='utf-8') as out:
        for f in findings:
            out.write(f"{f.file_path}:{f.line_number}:{f.col_offset}: "
                      f"{f.severity.value} {f.message_id}: {f.message}\n")
            if f.source:
                out.write(f"    root cause at line {f.source_line}: {f.source}\n")
            for hop in f.taint_chain:
                out.write(f"    via {hop}\n")
        out.write(f"Total findings: {len(findings)}\n")


def diagnostic_to_dict(f: Diagnostic) -> Dict[str, object]:
    return {
        "file": f.file_path, "line": f.line_number, "column": f.col_offset,
        "code": f.line_content, "rule": RULE_NAME, "message_id": f.message_id,
        "category": f.category.value, "severity": f.severity.value,
        "message": f.message, "data": {k: str(v) for k, v in f.format_data.items()},
        "source": f.source, "source_line": f.source_line, "source_column": f.source_col,
        "taint_chain": f.taint_chain, "cwe": f.cwe_id,
    }


def output_json(findings: List[Diagnostic], file_path: str = None):
    by_severity, by_category = summarize(findings)
    data = {
        "scan_date": datetime.now().isoformat(),
        "scanner": f"dbos-treesitter v{__version__}",
        "total_findings": len(findings),
        "findings": [diagnostic_to_dict(f) for f in findings],
        "summary": {
            "by_severity": dict(sorted(by_severity.items())),
            "by_category": dict(sorted(by_category.items())),
        }
    }
    json_str = json.dumps(data, indent=2)
    if file_path:
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(json_str)
    else:
        print(json_str)


# ============================================================================
# Scan Orchestration & File Discovery
# ============================================================================

SUPPORTED_EXTENSIONS = set(EXTENSION_DIALECTS)
SKIP_DIRS = {'node_modules', '.git', 'dist', 'build', 'out', 'coverage', '.next',
             '__pycache__', 'bower_components', 'jspm_packages', '.turbo', '.cache'}
SKIP_FILE_SUFFIXES = ('.d.ts', '.d.mts', '.d.cts', '.min.js', '.bundle.js', '.chunk.js')


def should_skip_file(file_path: str) -> bool:
    filename_lower = os.path.basename(file_path).lower()
    return filename_lower.endswith(SKIP_FILE_SUFFIXES)


def read_file(file_path: str) -> Optional[str]:
    for encoding in ['utf-8', 'latin-1']:
        try:
            with open(file_path, 'r', encoding=encoding) as f:
                return f.read()
        except UnicodeDecodeError:
            continue
        except OSError as e:
            logger.warning(f"cannot read {file_path}: {e}")
            return None
    return None


def collect_files(target: str, config: Optional[DbosLintConfig] = None) -> List[str]:
    """Expand target into the list of source files to analyze."""
    target_path = Path(target)
    files = []
    if target_path.is_file():
        fp = str(target_path)
        if not (config and config.should_exclude(fp)):
            files.append(fp)
    elif target_path.is_dir():
        for root, dirs, filenames in os.walk(str(target_path)):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
            for fname in sorted(filenames):
                fp = os.path.join(root, fname)
                ext = Path(fp).suffix.lower()
                if ext in SUPPORTED_EXTENSIONS and not should_skip_file(fp):
                    if config and config.should_exclude(fp):
                        logger.debug(f"excluded by config: {fp}")
                        continue
                    files.append(fp)
    else:
        raise FileNotFoundError(f"{target} does not exist")
    return files


def scan_file(file_path: str, content: str, policy: Policy = DEFAULT_POLICY) -> List[Diagnostic]:
    """Analyze one file; unsupported or unanalyzable files yield nothing."""
    try:
        return analyze_source(content, file_path, policy)
    except UnsupportedFileError as e:
        logger.debug(str(e))
    except LintError as e:
        logger.warning(f"{file_path}: analysis aborted: {e}")
    except RecursionError:
        logger.warning(f"{file_path}: skipped, nesting too deep to analyze")
    except Exception as e:
        logger.opt(exception=e).error(f"{file_path}: skipped after unexpected error: {e}")
    return []


def scan_path(target: str, policy: Policy = DEFAULT_POLICY, show_progress: bool = True,
              config: DbosLintConfig = None) -> Tuple[List[Diagnostic], int, float]:
    """Scan a file or directory. Returns (findings, file_count, elapsed)."""
    start = time.time()
    all_findings: List[Diagnostic] = []
    file_count = 0

    files = collect_files(target, config)

    def _scan_one(fp: str):
        nonlocal file_count
        content = read_file(fp)
        if content is None:
            return
        file_count += 1
        all_findings.extend(scan_file(fp, content, policy))

    if show_progress and files:
        with Progress(
            SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
            BarColumn(), MofNCompleteColumn(), console=console
        ) as progress:
            task = progress.add_task("[cyan]Analyzing files...", total=len(files))
            for fp in files:
                _scan_one(fp)
                progress.advance(task)
    else:
        for fp in files:
            _scan_one(fp)

    elapsed = time.time() - start
    return all_findings, file_count, elapsed


def filter_findings(findings: List[Diagnostic], min_severity: str = None,
                    suppression_keyword: str = "nosec") -> List[Diagnostic]:
    result = []
    for f in findings:
        # Check inline suppression (// nosec, /* nosec, etc.)
        if re.search(rf'(?://|/\*)\s*{re.escape(suppression_keyword)}\b', f.line_content):
            continue
        if 'dbos-lint:ignore' in f.line_content:
            continue
        result.append(f)
    if min_severity:
        threshold = SEVERITY_ORDER[Severity(min_severity)]
        result = [f for f in result if SEVERITY_ORDER[f.severity] >= threshold]
    return result


def configure_logging(verbose: bool):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING",
               format="<level>{level: <8}</level> | {message}")


# ============================================================================
# Main
# ============================================================================

def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description='dbos-treesitter - AST-Based DBOS Determinism & SQL Injection Linter'
    )
    parser.add_argument('target', nargs='?', help='File or directory to scan')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--output', choices=['text', 'json'], default='text', help='Output format')
    parser.add_argument('-o', '--output-file', help='Save report to file')
    parser.add_argument('--min-severity', choices=['CRITICAL', 'HIGH', 'MEDIUM', 'LOW'],
                        help='Minimum severity to report (default: from config, else LOW)')
    parser.add_argument('--no-banner', action='store_true', help='Suppress banner')
    parser.add_argument('--config', help='Path to .dbos-lint.yml config file')
    parser.add_argument('--list-rules', action='store_true', help='List message ids and exit')

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.list_rules and not args.target:
        parser.error("the following arguments are required: target")

    try:
        config = load_config(args.target or '.', args.config)
    except ConfigError as e:
        console.print(f"[bold red]Config error: {e}[/bold red]")
        sys.exit(2)
    policy = config.to_policy() if config else DEFAULT_POLICY

    if args.list_rules:
        output_rules(policy)
        sys.exit(0)

    min_severity = args.min_severity or (config.min_severity if config else 'LOW')
    is_json = args.output == 'json'

    if not args.no_banner and not is_json:
        _print_banner()

    try:
        findings, file_count, elapsed = scan_path(
            args.target,
            policy=policy,
            show_progress=not is_json,
            config=config
        )
    except FileNotFoundError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        sys.exit(2)

    suppression_kw = config.suppression_keyword if config else "nosec"
    findings = filter_findings(findings, min_severity, suppression_kw)
    findings.sort(key=lambda f: (f.file_path, f.line_number, f.col_offset))

    if is_json:
        output_json(findings, args.output_file)
    else:
        output_rich(findings, args.target, file_count, elapsed, min_severity)
        if args.output_file:
            output_text_plain(findings, args.output_file)
            console.print(f"\n[bold green]Report saved to {args.output_file}[/bold green]")

    blocking = sum(1 for f in findings if SEVERITY_ORDER[f.severity] >= SEVERITY_ORDER[Severity.MEDIUM])
    sys.exit(1 if blocking > 0 else 0)


if __name__ == '__main__':
    main()
