import unittest
from datetime import datetime
from unittest.mock import Mock

import requests
from github import GithubException
from github.GithubException import RateLimitExceededException


class ClassifyGithubErrorTests(unittest.TestCase):
    def test_401_is_authentication_failure_with_expiration(self):
        from issuesync.errors import AuthenticationFailure
        from issuesync.services.github_client import classify_github_error

        exc = GithubException(
            401,
            {"message": "Bad credentials"},
            {"GitHub-Authentication-Token-Expiration": "2024-06-01 00:00:00 UTC"},
        )
        error = classify_github_error(exc)

        self.assertIsInstance(error, AuthenticationFailure)
        self.assertEqual(error.token_expiration, "2024-06-01 00:00:00 UTC")
        self.assertEqual(error.http_status, 401)

    def test_403_with_exhausted_quota_is_rate_limit(self):
        from issuesync.errors import RateLimitExceeded
        from issuesync.services.github_client import classify_github_error

        exc = GithubException(
            403,
            {"message": "API rate limit exceeded"},
            {"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1717200000"},
        )
        error = classify_github_error(exc)

        self.assertIsInstance(error, RateLimitExceeded)
        self.assertEqual(error.reset_at, datetime(2024, 6, 1, 0, 0, 0))
        self.assertTrue(error.retryable)

    def test_rate_limit_exception_type_is_rate_limit(self):
        from issuesync.errors import RateLimitExceeded
        from issuesync.services.github_client import classify_github_error

        exc = RateLimitExceededException(403, {"message": "secondary rate limit"}, {})
        self.assertIsInstance(classify_github_error(exc), RateLimitExceeded)

    def test_other_403_is_permission_denied(self):
        from issuesync.errors import PermissionDenied
        from issuesync.services.github_client import classify_github_error

        exc = GithubException(
            403, {"message": "Resource not accessible"}, {"X-RateLimit-Remaining": "4999"}
        )
        self.assertIsInstance(classify_github_error(exc), PermissionDenied)

    def test_server_errors_and_timeouts_are_transient(self):
        from issuesync.errors import TransientNetworkFailure
        from issuesync.services.github_client import classify_github_error

        server = classify_github_error(GithubException(502, {"message": "Bad gateway"}, {}))
        self.assertIsInstance(server, TransientNetworkFailure)
        self.assertEqual(server.status, 502)

        timeout = classify_github_error(requests.exceptions.ReadTimeout("timed out"))
        self.assertIsInstance(timeout, TransientNetworkFailure)
        self.assertIsNone(timeout.status)


class GitHubClientPagingTests(unittest.TestCase):
    def _client(self, requester):
        from issuesync.services.github_client import GitHubClient

        # Skip __init__ (auth); only the requester is used.
        client = GitHubClient.__new__(GitHubClient)
        client.gh = Mock(requester=requester)
        return client

    def test_first_page_request_params(self):
        from issuesync.services.github_client import GitHubClient

        request = GitHubClient.first_page_request(
            "acme",
            "widgets",
            state="open",
            since=datetime(2024, 1, 1, 11, 0, 0),
            labels=["bug", "ui"],
            per_page=50,
        )

        self.assertEqual(request.url, "/repos/acme/widgets/issues")
        self.assertEqual(
            request.params,
            {"state": "open", "per_page": 50, "since": "2024-01-01T11:00:00Z", "labels": "bug,ui"},
        )

    def test_fetch_page_follows_link_header(self):
        from issuesync.services.github_client import GitHubClient

        requester = Mock()
        requester.requestJsonAndCheck.return_value = (
            {
                "Link": '<https://api.github.com/repositories/1/issues?page=2>; rel="next", '
                '<https://api.github.com/repositories/1/issues?page=9>; rel="last"',
                "X-RateLimit-Remaining": "4999",
                "GitHub-Authentication-Token-Expiration": "2030-01-01 00:00:00 UTC",
            },
            [{"id": 1}],
        )
        client = self._client(requester)

        page = client.fetch_page(GitHubClient.first_page_request("acme", "widgets"))

        self.assertEqual(page.items, [{"id": 1}])
        self.assertEqual(page.rate_limit_remaining, 4999)
        self.assertEqual(page.token_expiration, "2030-01-01 00:00:00 UTC")
        self.assertEqual(page.next_request.url, "https://api.github.com/repositories/1/issues?page=2")
        self.assertEqual(page.next_request.page, 2)
        self.assertIsNone(page.next_request.params)

    def test_last_page_has_no_next_request(self):
        from issuesync.services.github_client import PageRequest

        requester = Mock()
        requester.requestJsonAndCheck.return_value = ({}, [])
        page = self._client(requester).fetch_page(PageRequest(url="/repos/acme/widgets/issues"))

        self.assertEqual(page.items, [])
        self.assertIsNone(page.next_request)

    def test_fetch_page_raises_classified_error(self):
        from issuesync.errors import PermissionDenied
        from issuesync.services.github_client import PageRequest

        requester = Mock()
        requester.requestJsonAndCheck.side_effect = GithubException(403, {"message": "no"}, {})

        with self.assertRaises(PermissionDenied):
            self._client(requester).fetch_page(PageRequest(url="/repos/acme/widgets/issues"))

    def test_missing_credentials_is_configuration_error(self):
        from issuesync.errors import ConfigurationError
        from issuesync.services.github_client import GitHubClient

        with self.assertRaises(ConfigurationError):
            GitHubClient()


if __name__ == "__main__":
    unittest.main()
