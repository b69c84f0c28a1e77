import pytest
import requests

import lazyissues as li

REPO = li.RemoteRepo('github.com', 'octo', 'hello')


class FakeResponse:
    def __init__(self, payload=None, status_code=200, headers=None):
        self.payload = payload or {}
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error', response=self)

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({'url': url, 'json': json, 'timeout': timeout})
        return self.responses.pop(0)


@pytest.fixture
def waits(monkeypatch):
    calls = []
    monkeypatch.setattr(li, '_retry_sleep', lambda seconds, on_wait=None: calls.append(seconds))
    return calls


def _issue(number, title, *, closed=False, labels=(), login='octocat'):
    return {
        'number': number,
        'title': title,
        'closed': closed,
        'createdAt': '2024-03-01T10:00:00Z',
        'author': {'login': login} if login else None,
        'labels': {'nodes': [{'name': name} for name in labels]},
    }


def test_session_headers():
    s = li._session('abc')
    assert s.headers['Authorization'] == 'Bearer abc'
    assert s.headers['User-Agent'] == li.USER_AGENT


def test_fetch_issues_skips_null_nodes():
    payload = {'data': {'repository': {'issues': {'nodes': [
        _issue(3, 'Crash on start', labels=['bug', 'help wanted']),
        None,
        _issue(2, 'Old one', closed=True, login=None),
        {'title': 'no number'},
    ]}}}}
    session = FakeSession([FakeResponse(payload)])
    items = li.fetch_issues(session, REPO)

    assert [i.number for i in items] == [3, 2]
    assert items[0].labels == ['bug', 'help wanted']
    assert items[0].kind == 'issue'
    assert items[1].closed is True
    assert items[1].author is None

    sent = session.posts[0]
    assert sent['url'] == li.GITHUB_GRAPHQL_ENDPOINT
    assert sent['json']['variables'] == {'repoOwner': 'octo', 'repoName': 'hello'}
    assert 'issues(first: 100' in sent['json']['query']


def test_fetch_pull_requests_and_projects():
    prs = {'data': {'repository': {'pullRequests': {'nodes': [_issue(7, 'Add feature')]}}}}
    projects = {'data': {'repository': {'projectsV2': {'nodes': [
        {'number': 1, 'title': 'Roadmap', 'closed': False, 'createdAt': '2024-01-01T00:00:00Z',
         'creator': {'login': 'maintainer'}},
    ]}}}}
    session = FakeSession([FakeResponse(prs), FakeResponse(projects)])

    pulls = li.fetch_pull_requests(session, REPO)
    assert pulls[0].kind == 'pull_request'
    assert pulls[0].number == 7

    boards = li.fetch_projects(session, REPO)
    assert boards[0].kind == 'project'
    assert boards[0].author == 'maintainer'
    assert boards[0].labels == []


def test_missing_repository_raises_github_error():
    payload = {'data': {'repository': None}, 'errors': [
        {'type': 'NOT_FOUND', 'message': "Could not resolve to a Repository with the name 'octo/hello'."},
    ]}
    with pytest.raises(li.GitHubError) as err:
        li.fetch_issues(FakeSession([FakeResponse(payload)]), REPO)
    assert 'Could not resolve' in str(err.value)
    assert 'octo/hello' in str(err.value)


def test_rate_limited_response_is_retried(waits):
    limited = {'errors': [{'type': 'RATE_LIMITED', 'message': 'API rate limit exceeded'}]}
    ok = {'data': {'repository': {'issues': {'nodes': [_issue(1, 'One')]}}}}
    session = FakeSession([FakeResponse(limited), FakeResponse(ok)])
    items = li.fetch_issues(session, REPO)
    assert [i.number for i in items] == [1]
    assert waits == [5]


def test_transient_http_errors_honour_retry_after(waits):
    ok = {'data': {'repository': {'issues': {'nodes': []}}}}
    session = FakeSession([
        FakeResponse(status_code=502),
        FakeResponse(status_code=429, headers={'Retry-After': '7'}),
        FakeResponse(ok),
    ])
    assert li.fetch_issues(session, REPO) == []
    assert waits == [5, 7]


def test_client_errors_are_not_retried(waits):
    session = FakeSession([FakeResponse(status_code=401)])
    with pytest.raises(requests.HTTPError):
        li.fetch_issues(session, REPO)
    assert waits == []


def test_wait_budget_is_bounded(waits):
    limited = {'errors': [{'type': 'RATE_LIMITED', 'message': 'slow down'}]}
    session = FakeSession([FakeResponse(limited) for _ in range(20)])
    with pytest.raises(li.GitHubError):
        li.fetch_issues(session, REPO)
    assert sum(waits) <= 300


def test_fetch_issue_detail_with_comments():
    node = dict(_issue(5, 'Detail me', labels=['question']))
    node['body'] = 'Steps to reproduce'
    node['comments'] = {'edges': [
        {'node': {'author': {'login': 'alice'}, 'body': 'Same here', 'createdAt': '2024-03-02T08:00:00Z'}},
        None,
        {'node': {'author': None, 'body': 'Fixed?', 'createdAt': '2024-03-03T08:00:00Z'}},
    ]}
    session = FakeSession([FakeResponse({'data': {'repository': {'issue': node}}})])
    item = li.ListItem('issue', 5, 'Detail me', False, 'octocat', '2024-03-01T10:00:00Z')

    detail = li.fetch_item_detail(session, REPO, item)

    assert detail.body == 'Steps to reproduce'
    assert detail.item.labels == ['question']
    assert [c.author for c in detail.comments] == ['alice', None]
    assert detail.comments[1].body == 'Fixed?'
    sent = session.posts[0]['json']
    assert sent['variables']['number'] == 5
    assert 'issue(number: $number)' in sent['query']


def test_pull_request_detail_uses_pull_request_query():
    node = dict(_issue(9, 'Refactor'), body='', comments={'edges': []})
    session = FakeSession([FakeResponse({'data': {'repository': {'pullRequest': node}}})])
    item = li.ListItem('pull_request', 9, 'Refactor', False, 'octocat', '')
    detail = li.fetch_item_detail(session, REPO, item)
    assert detail.comments == []
    assert 'pullRequest(number: $number)' in session.posts[0]['json']['query']


def test_missing_detail_raises():
    session = FakeSession([FakeResponse({'data': {'repository': {'issue': None}}})])
    item = li.ListItem('issue', 404, 'Gone', False, None, '')
    with pytest.raises(li.GitHubError):
        li.fetch_item_detail(session, REPO, item)


def test_projects_have_no_detail():
    item = li.ListItem('project', 1, 'Roadmap', False, None, '')
    with pytest.raises(ValueError):
        li.fetch_item_detail(FakeSession([]), REPO, item)
