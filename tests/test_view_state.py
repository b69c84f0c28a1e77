import lazyissues as li

A = li.KeyAction


def _text(frags):
    return ''.join(text for _, text in frags)


def _state(make_item, count=3, **settings_kwargs):
    state = li.ViewState(li.Settings(**settings_kwargs))
    state.set_items('issues', [make_item(n) for n in range(1, count + 1)])
    return state


def test_selection_wraps_both_ways(make_item):
    state = _state(make_item)
    assert state.apply(A.PREVIOUS_ITEM) is None
    assert state.selected_item().number == 3
    state.apply(A.NEXT_ITEM)
    assert state.selected_item().number == 1
    state.apply(A.NEXT_ITEM)
    state.apply(A.NEXT_ITEM)
    state.apply(A.NEXT_ITEM)
    assert state.selected_item().number == 1


def test_empty_list_selection(make_item):
    state = li.ViewState(li.Settings())
    state.apply(A.NEXT_ITEM)
    assert state.selected_item() is None
    assert state.apply(A.OPEN_DETAIL) is None
    assert state.status == 'Nothing selected.'


def test_switching_views_requests_fetch_once(make_item):
    state = _state(make_item)
    assert state.apply(A.NEXT_VIEW) is li.Request.FETCH
    assert state.active_view == 'pull_requests'
    state.set_items('pull_requests', [make_item(10, kind='pull_request')])
    assert state.apply(A.PREVIOUS_VIEW) is None
    assert state.active_view == 'issues'
    assert state.apply(A.PREVIOUS_VIEW) is li.Request.FETCH
    assert state.active_view == 'projects'
    assert state.apply(A.NEXT_VIEW) is None
    assert state.active_view == 'issues'


def test_refresh_and_remote_requests(make_item):
    state = _state(make_item)
    assert state.apply(A.REFRESH) is li.Request.FETCH
    assert state.apply(A.SELECT_REMOTE) is li.Request.LIST_REMOTES


def test_shrinking_list_resets_selection(make_item):
    state = _state(make_item, count=5)
    for _ in range(4):
        state.apply(A.NEXT_ITEM)
    state.set_items('issues', [make_item(1)])
    assert state.selected_item().number == 1


def test_open_detail_only_for_issues_and_pull_requests(make_item):
    state = _state(make_item)
    assert state.apply(A.OPEN_DETAIL) is li.Request.DETAIL

    state.apply(A.PREVIOUS_VIEW)
    state.set_items('projects', [make_item(1, kind='project')])
    assert state.apply(A.OPEN_DETAIL) is None
    assert 'no detail' in state.status


def test_detail_navigation_and_close(make_item):
    state = _state(make_item)
    comments = [li.Comment('a', '', 'one'), li.Comment('b', '', 'two')]
    state.set_detail(li.ItemDetail(make_item(1), 'body', comments))

    state.apply(A.NEXT_DETAIL_ITEM)
    assert state.comment_index == 1
    state.apply(A.NEXT_DETAIL_ITEM)
    assert state.comment_index == 0
    state.apply(A.PREVIOUS_ITEM)
    assert state.comment_index == 1
    assert state.apply(A.REFRESH) is li.Request.DETAIL

    state.apply(A.CLOSE_DETAIL)
    assert state.detail is None
    assert state.selected_item().number == 1


def test_quit_closes_detail_first(make_item):
    state = _state(make_item)
    state.set_detail(li.ItemDetail(make_item(1), '', []))
    state.apply(A.QUIT)
    assert state.detail is None
    assert not state.quit_requested
    state.apply(A.QUIT)
    assert state.quit_requested


def test_remote_picker(make_item):
    state = _state(make_item)
    state.open_remote_picker(['git@github.com:me/fork.git', 'https://github.com/octo/hello'])
    state.apply(A.NEXT_ITEM)
    assert state.chosen_remote() == 'https://github.com/octo/hello'
    state.apply(A.NEXT_ITEM)
    assert state.chosen_remote() == 'git@github.com:me/fork.git'
    assert state.apply(A.OPEN_DETAIL) is li.Request.SET_REMOTE
    assert 'Select the remote' in _text(state.body_fragments())
    state.apply(A.CLOSE_DETAIL)
    assert state.remotes is None


def test_clear_items_forgets_loaded_views(make_item):
    state = _state(make_item)
    state.clear_items()
    assert state.items['issues'] == []
    assert state.apply(A.NEXT_VIEW) is li.Request.FETCH
    assert state.apply(A.PREVIOUS_VIEW) is li.Request.FETCH


def test_format_timestamp():
    assert li.format_timestamp('2024-01-02T03:04:05Z', li.DEFAULT_TIME_FORMAT) == '03:04 02.01.2024'
    assert li.format_timestamp('2024-01-02T03:04:05Z', '%Y/%m/%d') == '2024/01/02'
    assert li.format_timestamp('yesterday', '%Y') == 'yesterday'
    assert li.format_timestamp('', '%Y') == '-'
    assert li.format_timestamp(None, '%Y') == '-'


def test_list_fragments_use_tag_colors_and_time_format(make_item):
    settings = li.Settings(tags={'triage': li.RgbColor(255, 135, 0)}, time_format='%d/%m/%Y')
    items = [
        make_item(1, 'Open thing', labels=['triage', 'unknown']),
        make_item(2, 'Done thing', closed=True),
    ]
    frags = li.build_list_fragments(items, 1, settings)

    assert ('#ff8700', '[triage]') in frags
    assert ('ansiwhite', '[unknown]') in frags
    assert ('class:status.closed', '✓') in frags
    assert ('class:status.open', '○') in frags
    text = _text(frags)
    assert '02/01/2024' in text
    assert '#2 Done thing' in text
    cursor_at = [i for i, (style, _) in enumerate(frags) if style == '[SetCursorPosition]']
    assert len(cursor_at) == 1
    assert frags[cursor_at[0] + 1] == ('class:cursor', '> ')


def test_empty_list_shows_hint():
    assert 'Press u to fetch' in _text(li.build_list_fragments([], 0, li.Settings()))


def test_detail_fragments(make_item):
    settings = li.Settings(time_format='%Y')
    detail = li.ItemDetail(
        make_item(4, 'Broken build', labels=['bug']),
        'It fails.',
        [li.Comment('alice', '2023-05-05T00:00:00Z', 'Me too'), li.Comment(None, '', 'Hmm')],
    )
    frags = li.build_detail_fragments(detail, 1, settings)
    text = _text(frags)
    assert '#4 Broken build' in text
    assert 'It fails.' in text
    assert 'Comments (2)' in text
    assert ' · 2023' in text
    assert ('ansired', '[bug]') in frags
    assert ('class:comment.author class:comment.selected', 'ghost') in frags


def test_tab_fragments_highlight_active_view():
    frags = li.build_tab_fragments('pull_requests')
    assert ('class:tab.active', ' Pull Requests ') in frags
    assert ('class:tab', ' Issues ') in frags
    assert ('class:tab', ' Projects ') in frags


def test_rows_from_previous_remote_are_dropped(make_item):
    state = _state(make_item)
    pending = state.generation
    state.clear_items()

    assert state.set_items('issues', [make_item(99, 'Old repo')], pending) is False
    assert state.items['issues'] == []
    assert 'issues' not in state.loaded
    assert state.set_detail(li.ItemDetail(make_item(99), 'old', []), pending) is False
    assert state.detail is None

    assert state.set_items('issues', [make_item(1, 'New repo')], state.generation) is True
    assert state.selected_item().title == 'New repo'
