"""Tests for the edit-distance similarity helpers"""
import pytest

from budget_sync.core.similarity import best_match, similarity_score


@pytest.mark.parametrize('a, b, expected', [
    ('department', 'department', 1.0),
    ('Department', '  DEPARTMENT ', 1.0),
    ('', '', 1.0),
    ('abc', '', 0.0),
    ('departmnet', 'department', 0.8),
    ('kitten', 'sitting', 1 - 3 / 7),
])
def test_similarity_score(a, b, expected):
    assert similarity_score(a, b) == pytest.approx(expected)


def test_similarity_is_symmetric():
    assert similarity_score('Enginering', 'Engineering') == similarity_score('Engineering', 'Enginering')


def test_best_match_picks_closest_candidate():
    candidate, score = best_match('Enginering', ['Sales', 'Engineering', 'Marketing'])
    assert candidate == 'Engineering'
    assert score == pytest.approx(1 - 1 / 11)


def test_best_match_without_candidates():
    assert best_match('anything', []) == (None, 0.0)
