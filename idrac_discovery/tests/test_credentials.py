import unittest
from unittest import mock

from idrac_discovery import credentials
from idrac_discovery.credentials import CredentialResolver, manual_candidate
from idrac_discovery.errors import CredentialConfigError
from idrac_discovery.models import (
    CredentialAssignment,
    CredentialCandidate,
    CredentialPolicy,
    CredentialProfile,
    CredentialSource,
    HostCredentialOverride,
)


def profile(profile_id, username="root", secret=None, priority_order=100, is_default=False):
    return CredentialProfile(
        id=profile_id,
        name=profile_id,
        username=username,
        secret=secret or f"secret-{profile_id}",
        priority_order=priority_order,
        is_default=is_default,
    )


class CredentialResolverTests(unittest.TestCase):
    def test_more_specific_scope_first(self):
        """A /25 assignment is tried before the enclosing /24."""
        policy = CredentialPolicy(
            profiles=[profile("a"), profile("b")],
            assignments=[
                CredentialAssignment(id="1", profile_id="a", subnet="10.0.0.0/24"),
                CredentialAssignment(id="2", profile_id="b", subnet="10.0.0.0/25"),
            ],
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.5")

        self.assertEqual([c.profile_id for c in resolved], ["b", "a"])
        self.assertTrue(all(c.source == CredentialSource.ASSIGNMENT for c in resolved))

    def test_address_outside_narrow_scope(self):
        policy = CredentialPolicy(
            profiles=[profile("a"), profile("b")],
            assignments=[
                CredentialAssignment(id="1", profile_id="a", subnet="10.0.0.0/24"),
                CredentialAssignment(id="2", profile_id="b", subnet="10.0.0.0/25"),
            ],
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.200")

        self.assertEqual([c.profile_id for c in resolved], ["a"])

    def test_explicit_range_assignment(self):
        policy = CredentialPolicy(
            profiles=[profile("a")],
            assignments=[CredentialAssignment(profile_id="a", range_start="10.0.0.10", range_end="10.0.0.20")],
        )
        resolver = CredentialResolver(policy)

        self.assertEqual([c.profile_id for c in resolver.resolve("10.0.0.15")], ["a"])
        self.assertEqual(resolver.resolve("10.0.0.21"), [])

    def test_equal_scopes_ordered_by_priority_then_non_default(self):
        policy = CredentialPolicy(
            profiles=[
                profile("late", priority_order=20),
                profile("early-default", priority_order=10, is_default=True),
                profile("early", priority_order=10),
            ],
            assignments=[
                CredentialAssignment(profile_id="late", subnet="10.0.0.0/24"),
                CredentialAssignment(profile_id="early-default", subnet="10.0.0.0/24"),
                CredentialAssignment(profile_id="early", subnet="10.0.0.0/24"),
            ],
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.1")

        self.assertEqual([c.profile_id for c in resolved], ["early", "early-default", "late"])

    def test_host_override_comes_first(self):
        policy = CredentialPolicy(
            profiles=[profile("scoped"), profile("pinned")],
            assignments=[CredentialAssignment(profile_id="scoped", subnet="10.0.0.0/24")],
            host_overrides=[HostCredentialOverride(address="10.0.0.7", profile_id="pinned")],
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.7")

        self.assertEqual([c.profile_id for c in resolved], ["pinned", "scoped"])
        self.assertEqual(resolved[0].source, CredentialSource.HOST_OVERRIDE)

    def test_defaults_only_when_nothing_matched(self):
        policy = CredentialPolicy(
            profiles=[profile("scoped"), profile("fallback", is_default=True)],
            assignments=[CredentialAssignment(profile_id="scoped", subnet="10.0.0.0/24")],
        )
        resolver = CredentialResolver(policy)

        self.assertEqual([c.profile_id for c in resolver.resolve("10.0.0.1")], ["scoped"])
        self.assertEqual([c.profile_id for c in resolver.resolve("10.9.9.9")], ["fallback"])
        self.assertEqual(resolver.resolve("10.9.9.9")[0].source, CredentialSource.DEFAULT_PROFILE)

    def test_identical_credentials_collapsed(self):
        policy = CredentialPolicy(
            profiles=[profile("a", secret="calvin"), profile("b", secret="calvin")],
            assignments=[
                CredentialAssignment(profile_id="a", subnet="10.0.0.0/25"),
                CredentialAssignment(profile_id="b", subnet="10.0.0.0/24"),
            ],
            manual_fallback=CredentialCandidate(username="root", secret="calvin"),
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.1")

        self.assertEqual(len(resolved), 1)
        self.assertEqual(resolved[0].profile_id, "a")

    def test_manual_fallback_appended_last(self):
        policy = CredentialPolicy(
            profiles=[profile("a")],
            assignments=[CredentialAssignment(profile_id="a", subnet="10.0.0.0/24")],
            manual_fallback=CredentialCandidate(username="admin", secret="typed-in"),
        )

        resolved = CredentialResolver(policy).resolve("10.0.0.1")

        self.assertEqual([c.source for c in resolved], [CredentialSource.ASSIGNMENT, CredentialSource.MANUAL])

    def test_inactive_and_broken_assignments_ignored(self):
        policy = CredentialPolicy(
            profiles=[profile("a")],
            assignments=[
                CredentialAssignment(profile_id="a", subnet="10.0.0.0/24", is_active=False),
                CredentialAssignment(profile_id="a", subnet="not-a-subnet"),
                CredentialAssignment(profile_id="missing", subnet="10.0.0.0/24"),
            ],
        )

        with self.assertLogs(credentials.logger, level="WARNING"):
            resolver = CredentialResolver(policy)

        self.assertEqual(resolver.resolve("10.0.0.1"), [])

    def test_ipv6_assignments_never_match_ipv4_hosts(self):
        policy = CredentialPolicy(
            profiles=[profile("v6"), profile("d", is_default=True)],
            assignments=[
                CredentialAssignment(id="1", profile_id="v6", subnet="::/0"),
                CredentialAssignment(id="2", profile_id="v6", range_start="::", range_end="::ffff:ffff"),
            ],
        )

        with self.assertLogs(credentials.logger, level="WARNING") as logs:
            resolver = CredentialResolver(policy)

        self.assertEqual(len(logs.output), 2)
        self.assertEqual([c.profile_id for c in resolver.resolve("10.0.0.1")], ["d"])

    def test_no_applicable_credentials_is_empty_list(self):
        policy = CredentialPolicy(
            profiles=[profile("a")],
            assignments=[CredentialAssignment(profile_id="a", subnet="10.0.0.0/24")],
        )

        self.assertEqual(CredentialResolver(policy).resolve("192.168.1.1"), [])

    def test_empty_policy_rejected(self):
        with self.assertRaises(CredentialConfigError):
            CredentialResolver.from_policy(CredentialPolicy())

    def test_secret_not_in_repr(self):
        self.assertNotIn("calvin", repr(CredentialCandidate(username="root", secret="calvin")))


class ManualCandidateTests(unittest.TestCase):
    def test_job_credentials_used(self):
        candidate = manual_candidate("admin", "pw", port=8443)
        self.assertEqual((candidate.username, candidate.secret, candidate.port), ("admin", "pw", 8443))

    def test_environment_defaults(self):
        with mock.patch.object(credentials, "IDRAC_DEFAULT_USER", "root"), \
                mock.patch.object(credentials, "IDRAC_DEFAULT_PASSWORD", "calvin"):
            candidate = manual_candidate()
        self.assertEqual((candidate.username, candidate.secret), ("root", "calvin"))

    def test_no_password_anywhere(self):
        with mock.patch.object(credentials, "IDRAC_DEFAULT_PASSWORD", ""):
            self.assertIsNone(manual_candidate("admin"))


if __name__ == "__main__":
    unittest.main()
