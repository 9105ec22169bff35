"""Command-line interface for LLM Shield."""

from __future__ import annotations

import asyncio
import json
import sys

import click

from llm_shield.config import EngineConfig, get_settings
from llm_shield.logging import setup_logging
from llm_shield.security.models import RiskAssessment
from llm_shield.security.patterns import PatternCatalog
from llm_shield.security.risk_analyzer import RiskAnalyzer
from llm_shield.security.semantic import NaturalLanguageClient


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO instead of WARNING")
def main(verbose: bool) -> None:
    """LLM Shield: prompt risk scoring and adaptive mitigation."""
    setup_logging(level="INFO" if verbose else "WARNING", stream=sys.stderr)


@main.command()
@click.argument("text")
@click.option(
    "--semantic/--no-semantic",
    default=False,
    help="Blend in the external semantic signal (needs SEMANTIC_API_KEY)",
)
@click.option(
    "--catalog",
    "catalog_path",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON pattern catalog to use instead of the built-in one",
)
@click.option("--json", "as_json", is_flag=True, help="Print the assessment as JSON")
def analyze(text: str, semantic: bool, catalog_path: str | None, as_json: bool) -> None:
    """Score TEXT and print the assessment."""
    settings = get_settings()
    try:
        catalog = PatternCatalog.from_json(catalog_path) if catalog_path else None
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise click.ClickException(f"Could not load catalog: {e}") from e

    client = None
    if semantic:
        if settings.semantic_api_key is None:
            click.echo("Warning: SEMANTIC_API_KEY not set, scoring without semantics", err=True)
        else:
            client = NaturalLanguageClient()

    analyzer = RiskAnalyzer(
        catalog=catalog,
        config=EngineConfig.from_settings(settings).scoring,
        semantic=client,
    )
    assessment = asyncio.run(_analyze(analyzer, text, client))

    if as_json:
        click.echo(json.dumps(assessment.to_dict(), indent=2))
        return

    status = "BLOCK" if assessment.should_block else "ALLOW"
    click.echo(f"Risk score: {assessment.score:.1f} ({assessment.level.value}) -> {status}")
    click.echo(f"Confidence: {assessment.confidence:.2f}")
    if assessment.categories:
        click.echo(f"Categories: {', '.join(sorted(c.value for c in assessment.categories))}")
    for line in assessment.reasoning:
        click.echo(f"  - {line}")


async def _analyze(
    analyzer: RiskAnalyzer, text: str, client: NaturalLanguageClient | None
) -> RiskAssessment:
    try:
        return await analyzer.analyze(text)
    finally:
        if client is not None:
            await client.close()


@main.command("self-test")
@click.option(
    "--dataset",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON list of labelled cases; defaults to the built-in set",
)
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
def self_test(dataset: str | None, as_json: bool) -> None:
    """Run the labelled self-test dataset through the analyzer."""
    from llm_shield.selftest import load_cases, run_self_test

    try:
        cases = load_cases(dataset) if dataset else None
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Could not load dataset: {e}") from e

    report = run_self_test(cases)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        for result in report.results:
            mark = "PASS" if result.passed else "FAIL"
            label = result.case.description or result.case.prompt[:60]
            line = f"[{mark}] {label}: {result.level.value} ({result.score:.1f})"
            if result.failure_reason:
                line += f" - {result.failure_reason}"
            click.echo(line)
        click.echo(
            f"\n{report.passed}/{report.total} passed ({report.success_rate}% success rate)"
        )

    if report.failed:
        sys.exit(1)
