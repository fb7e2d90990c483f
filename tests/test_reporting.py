##########################################################################################
#
# Script name: test_reporting.py
#
# Description: Run report counters, finalization and rendered outputs.
#
##########################################################################################

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from feed_digest.config import Settings
from feed_digest.errors import ReportFinalizedError
from feed_digest.reporting import RunReport, generate_json_report, generate_markdown_report, save_reports


NOW = datetime(2026, 1, 9, 12, 0, tzinfo=timezone.utc)


class StepTimer:
    def __init__(self, *values: float):
        self.values = list(values)

    def __call__(self) -> float:
        return self.values.pop(0)


def _report() -> RunReport:
    return RunReport(Settings(), clock=lambda: NOW, timer=StepTimer(100.0, 102.5))


def test_item_statuses_are_counted() -> None:
    report = _report()
    report.record_item_result('success', 1.0, item_title='a')
    report.record_item_result('cached', item_title='b')
    report.record_item_result('skipped', item_title='c')
    report.record_item_result('failed', 3.0, error=RuntimeError('boom'), item_title='d')

    final = report.finalize()

    assert final.items.total == 4
    assert final.items.processed == 2
    assert final.items.successful == 2
    assert final.items.cached == 1
    assert final.items.skipped == 1
    assert final.items.failed == 1
    assert final.items.errors[0].name == 'd'
    assert final.items.errors[0].message == 'boom'
    assert final.performance.average_item_processing_time == 2.0
    assert final.performance.total_duration == 2.5
    assert final.performance.total_duration_formatted == '2.5s'


def test_feed_results_and_article_counts() -> None:
    report = _report()
    report.record_feed_result(True, feed_name='Good')
    report.record_feed_result(False, ValueError('HTTP 500'), 'Bad')
    report.record_feed_articles('Good', 3)
    report.record_feed_articles('Quiet', 0)

    final = report.finalize()

    assert (final.feeds.total, final.feeds.successful, final.feeds.failed) == (2, 1, 1)
    assert final.feeds.with_articles == 1
    assert final.feeds.articles_per_feed == {'Good': 3}
    assert final.feeds.errors[0].name == 'Bad'


def test_report_cannot_be_used_after_finalize() -> None:
    report = _report()
    report.finalize()

    with pytest.raises(ReportFinalizedError):
        report.finalize()
    with pytest.raises(ReportFinalizedError):
        report.record_item_result('success')
    with pytest.raises(ReportFinalizedError):
        report.record_feed_result(True)


def test_unknown_item_status_is_rejected() -> None:
    with pytest.raises(ValueError):
        _report().record_item_result('exploded')


def test_json_and_markdown_outputs() -> None:
    report = _report()
    report.record_feed_result(True, feed_name='Good')
    report.record_feed_articles('Good', 2)
    report.record_item_result('success', 1.0, item_title='a')
    final = report.finalize()

    data = json.loads(generate_json_report(final))
    assert data['date']['dateId'] == '2026-01-09'
    assert data['feeds']['articlesPerFeed'] == {'Good': 2}
    assert data['items']['successful'] == 1
    assert data['performance']['totalDurationFormatted'] == '2.5s'

    markdown = generate_markdown_report(final)
    assert '# Feed Digest Report' in markdown
    assert '**Date:** January 9, 2026' in markdown
    assert '| Good | 2 |' in markdown


def test_save_reports_writes_both_files(tmp_path: Path) -> None:
    final = _report().finalize()

    paths = save_reports(final, str(tmp_path / 'reports'))

    assert paths['json'].name == 'execution-2026-01-09T12-00-00-000Z.json'
    assert paths['markdown'].exists()
    assert json.loads(paths['json'].read_text(encoding='utf-8'))['items']['total'] == 0
