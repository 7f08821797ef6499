"""Manual remediation guidance for vulnerabilities that are not auto-fixed."""

from __future__ import annotations

from sitemend.core.models import ManualInstructions, Vulnerability

OWASP_TOP_TEN = "https://owasp.org/www-project-top-ten/"

_TEMPLATES: dict[str, dict] = {
    "sql_injection": {
        "title": "Fix SQL injection",
        "steps": [
            "Locate every query built from request data in the affected files.",
            "Replace string concatenation with prepared statements ($wpdb->prepare).",
            "Validate and cast numeric parameters before use.",
            "Re-run the scanner to confirm the finding is gone.",
        ],
        "resources": ["https://owasp.org/www-community/attacks/SQL_Injection"],
        "difficulty": "hard",
        "minutes": 60,
    },
    "xss": {
        "title": "Fix cross-site scripting",
        "steps": [
            "Find where request data is echoed into HTML in the affected files.",
            "Escape output with esc_html(), esc_attr() or esc_url() as appropriate.",
            "Sanitize input on save with sanitize_text_field() or wp_kses().",
            "Add a Content-Security-Policy header to limit script sources.",
        ],
        "resources": ["https://owasp.org/www-community/attacks/xss/"],
        "difficulty": "medium",
        "minutes": 45,
    },
    "csrf": {
        "title": "Add CSRF protection",
        "steps": [
            "Add wp_nonce_field() to every state-changing form.",
            "Verify the nonce with check_admin_referer() or wp_verify_nonce() in the handler.",
            "Reject requests whose nonce is missing or invalid.",
        ],
        "resources": ["https://owasp.org/www-community/attacks/csrf"],
        "difficulty": "medium",
        "minutes": 30,
    },
    "file_inclusion": {
        "title": "Fix file inclusion",
        "steps": [
            "Remove request data from include/require paths.",
            "Map allowed values to a fixed list of files.",
            "Disable allow_url_include in the PHP configuration.",
        ],
        "resources": [OWASP_TOP_TEN],
        "difficulty": "hard",
        "minutes": 60,
    },
    "malware": {
        "title": "Remove malware",
        "steps": [
            "Take the site offline or enable maintenance mode.",
            "Compare affected files against clean copies from the original vendor.",
            "Replace infected files and remove unknown files.",
            "Rotate all passwords, API keys and the authentication salts.",
            "Review user accounts for unknown administrators.",
            "Scan again before bringing the site back online.",
        ],
        "resources": ["https://wordpress.org/documentation/article/faq-my-site-was-hacked/"],
        "difficulty": "hard",
        "minutes": 120,
        "warnings": ["Do not restore from a backup taken after the infection date."],
    },
    "file_permissions": {
        "title": "Correct file permissions",
        "steps": [
            "Set directories to 755 and files to 644.",
            "Set wp-config.php to 600 (or 640 if the web server needs group read).",
            "Make sure no file or directory is world-writable (777/666).",
        ],
        "resources": ["https://developer.wordpress.org/advanced-administration/server/file-permissions/"],
        "difficulty": "easy",
        "minutes": 15,
    },
    "wordpress_core": {
        "title": "Update the platform core",
        "steps": [
            "Back up files and database.",
            "Update core from the dashboard or with `wp core update`.",
            "Verify core checksums with `wp core verify-checksums`.",
            "Test logins, forms and checkout flows.",
        ],
        "resources": ["https://wordpress.org/documentation/article/updating-wordpress/"],
        "difficulty": "medium",
        "minutes": 30,
    },
    "configuration": {
        "title": "Harden site configuration",
        "steps": [
            "Set WP_DEBUG to false on production sites.",
            "Define unique authentication keys and salts.",
            "Add DISALLOW_FILE_EDIT and FORCE_SSL_ADMIN to wp-config.php.",
            "Send security headers from the web server configuration.",
        ],
        "resources": ["https://developer.wordpress.org/advanced-administration/security/hardening/"],
        "difficulty": "easy",
        "minutes": 20,
    },
}

_ALIASES = {
    "sql": "sql_injection",
    "cross_site_scripting": "xss",
    "lfi": "file_inclusion",
    "rfi": "file_inclusion",
    "backdoor": "malware",
    "suspicious_code": "malware",
    "directory_permissions": "file_permissions",
    "upload_permissions": "file_permissions",
    "core_vulnerability": "wordpress_core",
    "misconfiguration": "configuration",
    "wp_config_issue": "configuration",
    "htaccess_issue": "configuration",
    "security_headers": "configuration",
}


def manual_instructions(vulnerability: Vulnerability, reason: str = "") -> ManualInstructions:
    """Fallback instructions when no strategy produced its own."""
    key = vulnerability.type_key
    key = _ALIASES.get(key, key)
    template = _TEMPLATES.get(key) or _TEMPLATES.get(_ALIASES.get(vulnerability.category_key, vulnerability.category_key))

    resources = ", ".join(vulnerability.affected_resources) or "the affected resources"
    if template is None:
        return ManualInstructions(
            title=f"Review {vulnerability.type} vulnerability",
            summary=reason or f"No automatic fix is available for {vulnerability.type}.",
            steps=[
                f"Review {resources}.",
                "Apply the vendor's security update if one exists.",
                "Consult a security specialist if the issue cannot be resolved.",
            ],
            resources=[OWASP_TOP_TEN],
            difficulty="medium",
            estimated_minutes=30,
        )

    steps = [f"Affected: {resources}.", *template["steps"]]
    return ManualInstructions(
        title=template["title"],
        summary=reason or vulnerability.description or template["title"],
        steps=steps,
        resources=list(template["resources"]),
        warnings=list(template.get("warnings", [])),
        difficulty=template["difficulty"],
        estimated_minutes=template["minutes"],
    )
