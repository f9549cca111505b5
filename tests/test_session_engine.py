import datetime as dt

import pytest

import prtop
from prtop import (
    CheckStatus, DataFetched, FetchData, FetchList, KeyPress, ListFetched, Mode,
    OpenURL, Quit, Resize, StartTimer, Tick,
)

FETCHED = dt.datetime(2024, 1, 10, 12, 0, tzinfo=dt.timezone.utc)


def _checks(*statuses):
    return [
        prtop.Check(f'check-{i}', status, details_url=f'https://example.com/{i}')
        for i, status in enumerate(statuses)
    ]


def _data(checks):
    return prtop.PRData(title='Title', head_ref_name='branch', url='https://github.com/acme/repo/pull/1', checks=checks)


def _viewer(height=0, **kwargs):
    engine = prtop.SessionEngine.for_pr('acme/repo', '1', 5, clock=lambda: FETCHED, **kwargs)
    engine.start()
    if height:
        engine.handle(Resize(80, height))
    return engine


def _load(engine, checks):
    return engine.handle(DataFetched('acme/repo', '1', data=_data(checks)))


def _picker_with(prs):
    engine = prtop.SessionEngine.for_picker(5)
    engine.start()
    engine.handle(ListFetched(prs=prs))
    return engine


PRS = [
    prtop.PRSummary('acme/api', 11, 'First'),
    prtop.PRSummary('acme/web', 22, 'Second'),
]


def test_viewer_start_fetches_and_arms_timer():
    engine = prtop.SessionEngine.for_pr('acme/repo', '1', 5)
    commands = engine.start()
    assert commands == [FetchData('acme/repo', '1'), StartTimer(5, engine.state.timer_generation)]
    st = engine.state
    assert st.mode is Mode.VIEWING
    assert st.can_go_back is False
    assert st.loading is False
    assert st.pr_data is None


def test_picker_start_fetches_list():
    engine = prtop.SessionEngine.for_picker(5)
    assert engine.start() == [FetchList()]
    assert engine.state.mode is Mode.SELECTING
    assert engine.state.loading is True
    assert engine.state.can_go_back is True


def test_list_success_replaces_prs_and_resets_selection():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('down'))
    engine.handle(ListFetched(prs=list(reversed(PRS))))
    st = engine.state
    assert st.loading is False
    assert st.error is None
    assert st.selected == 0
    assert st.prs[0].repo == 'acme/web'


def test_list_failure_sets_error():
    engine = prtop.SessionEngine.for_picker(5)
    engine.start()
    engine.handle(ListFetched(error='gh CLI error: boom'))
    assert engine.state.loading is False
    assert engine.state.error == 'gh CLI error: boom'


def test_enter_on_picker_starts_viewing():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('down'))
    commands = engine.handle(KeyPress('enter'))
    st = engine.state
    assert st.mode is Mode.VIEWING
    assert (st.repo, st.number) == ('acme/web', '22')
    assert st.selected == 0
    assert st.scroll_offset == 0
    assert st.pr_data is None
    assert commands == [FetchData('acme/web', '22'), StartTimer(5, st.timer_generation)]


def test_enter_on_empty_picker_does_nothing():
    engine = _picker_with([])
    assert engine.handle(KeyPress('enter')) == []
    assert engine.state.mode is Mode.SELECTING


def test_picker_navigation_clamps():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('up'))
    assert engine.state.selected == 0
    for _ in range(5):
        engine.handle(KeyPress('down'))
    assert engine.state.selected == 1


def test_picker_refresh_sets_loading():
    engine = _picker_with(PRS)
    assert engine.handle(KeyPress('refresh')) == [FetchList()]
    assert engine.state.loading is True


def test_back_returns_to_picker_when_started_there():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('enter'))
    _load(engine, _checks(CheckStatus.PASS))
    commands = engine.handle(KeyPress('back'))
    st = engine.state
    assert commands == [FetchList()]
    assert st.mode is Mode.SELECTING
    assert st.loading is True
    assert st.pr_data is None
    assert st.selected == 0
    assert st.scroll_offset == 0


def test_back_is_ignored_when_started_on_a_pr():
    engine = _viewer()
    _load(engine, _checks(CheckStatus.PASS))
    assert engine.handle(KeyPress('back')) == []
    assert engine.state.mode is Mode.VIEWING
    assert engine.state.pr_data is not None


def test_back_in_picker_does_nothing():
    engine = _picker_with(PRS)
    assert engine.handle(KeyPress('back')) == []
    assert engine.state.mode is Mode.SELECTING


def test_data_success_applies_and_clears_error():
    engine = _viewer()
    engine.handle(DataFetched('acme/repo', '1', error='gh CLI error: flaky'))
    _load(engine, _checks(CheckStatus.PASS))
    st = engine.state
    assert st.error is None
    assert st.fetched_at == FETCHED
    assert len(st.pr_data.checks) == 1


def test_data_failure_keeps_previous_data():
    engine = _viewer()
    _load(engine, _checks(CheckStatus.PASS, CheckStatus.FAIL))
    engine.handle(DataFetched('acme/repo', '1', error='gh CLI error: rate limited'))
    st = engine.state
    assert st.error == 'gh CLI error: rate limited'
    assert len(st.pr_data.checks) == 2
    assert st.fetched_at == FETCHED


def test_data_for_another_pr_is_dropped():
    engine = _viewer()
    engine.handle(DataFetched('acme/other', '9', data=_data(_checks(CheckStatus.PASS))))
    assert engine.state.pr_data is None


def test_list_result_outside_picker_is_dropped():
    engine = _viewer()
    engine.handle(ListFetched(prs=PRS))
    assert engine.state.prs == []


def test_data_arrival_clamps_selection():
    engine = _viewer(height=30)
    _load(engine, _checks(*[CheckStatus.PASS] * 6))
    for _ in range(5):
        engine.handle(KeyPress('down'))
    assert engine.state.selected == 5
    _load(engine, _checks(CheckStatus.PASS, CheckStatus.FAIL))
    assert engine.state.selected == 1
    _load(engine, [])
    assert engine.state.selected == 0
    assert engine.state.scroll_offset == 0


def test_scroll_follows_selection_downwards():
    engine = _viewer(height=12)
    assert engine.state.visible_rows() == 4
    _load(engine, _checks(*[CheckStatus.PASS] * 6))
    for _ in range(5):
        engine.handle(KeyPress('down'))
    assert engine.state.selected == 5
    assert engine.state.scroll_offset == 2


def test_scroll_follows_selection_upwards():
    engine = _viewer(height=12)
    _load(engine, _checks(*[CheckStatus.PASS] * 5))
    engine.state.selected = 2
    engine.state.scroll_offset = 2
    engine.handle(KeyPress('up'))
    assert engine.state.selected == 1
    assert engine.state.scroll_offset == 1


def test_scroll_stays_zero_when_everything_fits():
    engine = _viewer(height=30)
    _load(engine, _checks(CheckStatus.PASS, CheckStatus.FAIL, CheckStatus.RUNNING))
    for _ in range(10):
        engine.handle(KeyPress('down'))
    assert engine.state.selected == 2
    assert engine.state.scroll_offset == 0


def test_navigation_on_empty_checks():
    engine = _viewer(height=20)
    _load(engine, [])
    engine.handle(KeyPress('down'))
    engine.handle(KeyPress('up'))
    assert engine.state.selected == 0
    assert engine.state.scroll_offset == 0
    assert engine.handle(KeyPress('enter')) == []


def test_resize_keeps_selection_visible():
    engine = _viewer(height=30)
    _load(engine, _checks(*[CheckStatus.PASS] * 10))
    for _ in range(9):
        engine.handle(KeyPress('down'))
    assert engine.state.scroll_offset == 0
    engine.handle(Resize(80, 12))
    st = engine.state
    assert (st.width, st.height) == (80, 12)
    assert st.scroll_offset <= st.selected < st.scroll_offset + st.visible_rows()
    assert st.scroll_offset == 6


def test_visible_rows_floor():
    engine = _viewer(height=5)
    assert engine.state.visible_rows() == 1


def _many_prs(n):
    return [prtop.PRSummary('acme/repo', i, f'PR {i}') for i in range(n)]


def test_picker_scroll_follows_selection():
    engine = _picker_with(_many_prs(5))
    engine.handle(Resize(80, 10))
    st = engine.state
    assert st.visible_rows() == 2
    for _ in range(4):
        engine.handle(KeyPress('down'))
    assert st.selected == 4
    assert st.scroll_offset == 3
    for _ in range(3):
        engine.handle(KeyPress('up'))
    assert st.selected == 1
    assert st.scroll_offset == 1


def test_picker_resize_keeps_selection_visible():
    engine = _picker_with(_many_prs(5))
    engine.handle(Resize(80, 40))
    for _ in range(4):
        engine.handle(KeyPress('down'))
    assert engine.state.scroll_offset == 0
    engine.handle(Resize(80, 10))
    st = engine.state
    assert st.scroll_offset <= st.selected < st.scroll_offset + st.visible_rows()
    assert st.scroll_offset == 3


def test_picker_list_refresh_resets_scroll():
    engine = _picker_with(_many_prs(5))
    engine.handle(Resize(80, 10))
    for _ in range(4):
        engine.handle(KeyPress('down'))
    engine.handle(KeyPress('refresh'))
    engine.handle(ListFetched(prs=_many_prs(5)))
    assert (engine.state.selected, engine.state.scroll_offset) == (0, 0)


def test_toggle_skipped_in_viewer():
    engine = _viewer(height=30)
    _load(engine, _checks(CheckStatus.PASS, CheckStatus.PASS, CheckStatus.SKIPPED))
    assert len(engine.state.filtered_checks()) == 2
    assert engine.state.hidden_count() == 1
    engine.handle(KeyPress('down'))
    assert engine.handle(KeyPress('toggle_skipped')) == []
    st = engine.state
    assert st.hide_skipped is False
    assert st.selected == 0
    assert st.scroll_offset == 0
    assert len(st.filtered_checks()) == 3
    assert st.hidden_count() == 0


def test_toggle_skipped_ignored_in_picker():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('toggle_skipped'))
    assert engine.state.hide_skipped is True


def test_filtered_checks_keep_order():
    engine = _viewer()
    checks = prtop.sort_checks(_checks(CheckStatus.SKIPPED, CheckStatus.PASS, CheckStatus.RUNNING, CheckStatus.FAIL))
    _load(engine, checks)
    assert [c.status for c in engine.state.filtered_checks()] == [CheckStatus.RUNNING, CheckStatus.FAIL, CheckStatus.PASS]


def _named(*pairs):
    return [prtop.Check(name, status) for name, status in pairs]


def test_hidden_skipped_checks_are_counted_not_shown():
    engine = _viewer(height=30)
    _load(engine, prtop.sort_checks(_named(
        ('build', CheckStatus.PASS), ('skip1', CheckStatus.SKIPPED), ('lint', CheckStatus.FAIL))))
    st = engine.state
    assert [c.name for c in st.filtered_checks()] == ['lint', 'build']
    assert st.hidden_count() == 1
    assert len(st.pr_data.checks) == 3


def test_toggling_skipped_twice_restores_rows():
    engine = _viewer(height=30)
    _load(engine, prtop.sort_checks(_named(
        ('docs', CheckStatus.SKIPPED), ('build', CheckStatus.PASS),
        ('lint', CheckStatus.FAIL), ('deploy', CheckStatus.RUNNING))))
    before = list(engine.state.filtered_checks())
    engine.handle(KeyPress('toggle_skipped'))
    assert [c.name for c in engine.state.filtered_checks()] == ['deploy', 'lint', 'build', 'docs']
    engine.handle(KeyPress('toggle_skipped'))
    assert engine.state.hide_skipped is True
    assert engine.state.filtered_checks() == before
    assert [c.name for c in before] == ['deploy', 'lint', 'build']


def test_enter_in_viewer_opens_selected_details():
    engine = _viewer(height=30)
    _load(engine, _checks(CheckStatus.PASS, CheckStatus.FAIL))
    engine.handle(KeyPress('down'))
    assert engine.handle(KeyPress('enter')) == [OpenURL('https://example.com/1')]


def test_enter_in_viewer_without_details_url():
    engine = _viewer(height=30)
    _load(engine, [prtop.Check('bare', CheckStatus.PASS)])
    assert engine.handle(KeyPress('enter')) == []


def test_refresh_in_viewer_keeps_data():
    engine = _viewer()
    _load(engine, _checks(CheckStatus.PASS))
    assert engine.handle(KeyPress('refresh')) == [FetchData('acme/repo', '1')]
    assert engine.state.pr_data is not None
    assert engine.state.loading is False


def test_tick_refetches_and_rearms():
    engine = _viewer()
    gen = engine.state.timer_generation
    assert engine.handle(Tick(gen)) == [FetchData('acme/repo', '1'), StartTimer(5, gen)]


def test_stale_tick_is_dropped_after_reentering_viewer():
    engine = _picker_with(PRS)
    engine.handle(KeyPress('enter'))
    old_gen = engine.state.timer_generation
    engine.handle(KeyPress('back'))
    assert engine.handle(Tick(old_gen)) == []
    engine.handle(ListFetched(prs=PRS))
    engine.handle(KeyPress('enter'))
    assert engine.handle(Tick(old_gen)) == []
    assert engine.handle(Tick(engine.state.timer_generation)) != []


def test_tick_in_picker_does_nothing():
    engine = _picker_with(PRS)
    assert engine.handle(Tick(engine.state.timer_generation)) == []


def test_quit_terminates():
    engine = _viewer()
    _load(engine, _checks(CheckStatus.PASS))
    assert engine.handle(KeyPress('quit')) == [Quit()]
    assert engine.state.terminated is True
    snapshot = (engine.state.selected, engine.state.pr_data)
    assert engine.handle(KeyPress('down')) == []
    assert engine.handle(Tick(engine.state.timer_generation)) == []
    assert (engine.state.selected, engine.state.pr_data) == snapshot


def test_quit_from_picker():
    engine = _picker_with(PRS)
    assert engine.handle(KeyPress('quit')) == [Quit()]


def test_unknown_key_is_ignored():
    engine = _viewer()
    assert engine.handle(KeyPress('dance')) == []


def test_unsupported_event_raises():
    engine = _viewer()
    with pytest.raises(TypeError):
        engine.handle(object())


def test_invariants_hold_through_a_session():
    engine = _picker_with(PRS)
    engine.handle(Resize(80, 14))
    engine.handle(KeyPress('enter'))
    statuses = [CheckStatus.PASS, CheckStatus.SKIPPED, CheckStatus.FAIL, CheckStatus.RUNNING] * 4
    events = (
        [DataFetched('acme/api', '11', data=_data(prtop.sort_checks(_checks(*statuses))))]
        + [KeyPress('down')] * 14
        + [KeyPress('toggle_skipped')]
        + [KeyPress('down')] * 20
        + [Resize(80, 10), KeyPress('up'), Resize(80, 40)]
        + [DataFetched('acme/api', '11', data=_data(_checks(CheckStatus.PASS, CheckStatus.PASS)))]
    )
    for event in events:
        engine.handle(event)
        st = engine.state
        n = len(st.filtered_checks())
        if n:
            assert 0 <= st.selected < n
            assert st.scroll_offset <= st.selected < st.scroll_offset + st.visible_rows()
        else:
            assert st.selected == 0
        assert 0 <= st.scroll_offset <= max(0, n - st.visible_rows())
