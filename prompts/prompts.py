"""Prompt templates for the business logic analyst."""

# Fixed framing placed at the top of every analysis prompt
BUSINESS_LOGIC_MINDSET = """REQUIRED MINDSET:
- Think like a fraudster, not a developer
- Look for what is "technically allowed but not intended"
- Ignore classic technical bugs (XSS, SQLi)
- Focus on abusing legitimate features

SYSTEMATIC ANALYSIS:
1. Understand the business model of the application
2. Identify every money flow and point of value
3. Map user roles and their privileges
4. Spot multi-step workflows

QUESTIONS TO ALWAYS ASK:
- Can steps be bypassed?
- What happens with negative or extreme values?
- Can several features be combined for an unexpected result?
- Are race conditions possible?
- Are some limits enforced client-side only?

PRIORITY TESTS:
- Price and quantity manipulation
- Bypassing time-based restrictions
- Promo code and discount abuse
- Privilege escalation through workflows
- Double spending or double use"""

# Instructions of the model-side agent
BUSINESS_LOGIC_ANALYST_PROMPT = """You are a bug bounty expert specialised in business logic abuse.
You receive a compressed HTTP request together with what is known about the target project.
Answer concisely and in an actionable way: concrete tests, exact values to send,
and what response would indicate a vulnerability."""

CLOSING_INSTRUCTION = """ANALYZE NOW:
Based on this request and the project history, suggest specific business logic abuse tests.
Focus on manipulations that are technically allowed but not intended.
Propose 3 concrete tests with the exact values to try."""

SHORT_CLOSING_INSTRUCTION = "SUGGEST 3 TESTS WITH EXACT VALUES:"

# Section headers of the assembled prompt
PROJECT_MEMORY_TEMPLATE = """PROJECT CONTEXT: {domain}
BUSINESS TYPE: {business_type}

IDENTIFIED PATTERNS:
{patterns}

CONFIRMED EXPLOITS (what worked):
{exploits}

RECENT TESTS:
{tests}

LEARNED PATTERNS:
{learned}

PROJECT NOTES:
{notes}"""

REQUEST_CONTEXT_TEMPLATE = """CURRENT REQUEST:
Endpoint: {method} {endpoint}
Domain: {domain}
Category: {category}

CRITICAL DATA:
{critical}

DETECTED PATTERNS:
{patterns}

POSSIBLE ATTACK VECTORS:
{vectors}"""

SIMILAR_REQUESTS_HEADER = "SIMILAR REQUESTS ALREADY ANALYZED:"

NO_PATTERNS = "No confirmed pattern for this project yet"
NO_EXPLOITS = "No confirmed exploit yet"
NO_TESTS = "No recent test"
NO_NOTES = "No specific notes"

# Follow-up suggestions after feedback
NEXT_STEP_TEMPLATES = [
    'Building on the success "{last_success}", try combining it with another parameter',
    'Pattern "{pattern}" confirmed. Test extreme values (MAX_INT, -1, 0.001)',
    "Success validated. Now try a race condition on the same endpoint",
    "Working exploit. Check whether it applies to similar endpoints",
]

ALTERNATIVE_TEMPLATES = [
    '"{failed_attempt}" did not work. Try a different encoding (URL, Base64)',
    "Failure detected. Try bypassing through a hidden parameter or a custom header",
    'Error: "{error_message}". This may be server-side validation, try calling the API directly',
    "Test failed. Check whether the workflow can be reached through another route",
]
