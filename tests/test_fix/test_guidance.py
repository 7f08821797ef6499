"""Tests for manual remediation guidance."""

from __future__ import annotations

from sitemend.core.models import Vulnerability
from sitemend.fix.guidance import OWASP_TOP_TEN, manual_instructions


class TestManualInstructions:
    def test_known_type(self):
        """Known types get their template with the affected resources listed first."""
        vuln = Vulnerability(id="v", type="csrf", affected_resources=["wp-content/plugins/contact/contact.php"])
        instructions = manual_instructions(vuln)
        assert "contact.php" in instructions.steps[0]
        assert len(instructions.steps) > 1
        assert instructions.resources

    def test_alias(self):
        """Aliased types share a template."""
        a = manual_instructions(Vulnerability(id="v", type="backdoor"))
        b = manual_instructions(Vulnerability(id="v", type="malware"))
        assert a.title == b.title

    def test_category_fallback(self):
        """An unknown type with a known category uses the category's template."""
        by_category = manual_instructions(Vulnerability(id="v", type="weird", category="misconfiguration"))
        direct = manual_instructions(Vulnerability(id="v", type="configuration"))
        assert by_category.title == direct.title

    def test_generic_fallback(self):
        """Unknown types get generic review steps."""
        instructions = manual_instructions(Vulnerability(id="v", type="quantum_leak"))
        assert instructions.title == "Review quantum_leak vulnerability"
        assert instructions.resources == [OWASP_TOP_TEN]
        assert "the affected resources" in instructions.steps[0]

    def test_reason_becomes_summary(self):
        """A decline reason is used as the summary."""
        instructions = manual_instructions(Vulnerability(id="v", type="xss"), reason="risk too high")
        assert instructions.summary == "risk too high"
