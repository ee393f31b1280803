"""
Drug-name tokenizer and keyword rule evaluator.

Two matching styles are used by the engine:

  * Detection matching (trigger matcher): a keyword matches when its
    normalized text is a substring of the normalized drug name.
  * Search-term matching (coverage scanner): a free-text term such as
    "Losartan 50 MG Tablet" is split into tokens; the term matches when every
    token appears in the drug name. A list of terms matches when any term does.

Normalization upper-cases and replaces punctuation (*, #, /, ...) with spaces so
"LISINOPRIL*10MG" and "Lisinopril 10mg" compare equal.
"""

import re

_NON_ALNUM = re.compile(r"[^A-Z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_TERM_SPLIT = re.compile(r"[\s,.\-()\[\]]+")
_DIGITS = re.compile(r"^\d+$")

# Unit abbreviations, salt suffixes and free-text connector words that appear in
# admin-entered drug descriptions but carry no product identity. Formulation
# words (TABLET, CREAM, ER, XR ...) are deliberately absent: dropping them lets a
# cream match a tablet.
NOISE_TOKENS = frozenset({
    "MG", "ML", "MCG", "HCL", "SODIUM", "POTASSIUM",
    "THE", "AND", "FOR", "WITH", "TO", "OF",
    "IF", "TRY", "ALTERNATES", "FAILS", "BEFORE", "SAYING", "DOESNT", "WORK",
})


def normalize_drug_name(name: str | None) -> str:
    """Upper-case, strip punctuation, collapse whitespace."""
    if not name:
        return ""
    upper = _NON_ALNUM.sub(" ", name.upper())
    return _WHITESPACE.sub(" ", upper).strip()


def keyword_matches(drug_name: str, keyword: str) -> bool:
    """Substring match of a normalized keyword against an already-normalized drug name."""
    kw = normalize_drug_name(keyword)
    return bool(kw) and kw in drug_name


def matches_any(drug_name: str, keywords) -> bool:
    return any(keyword_matches(drug_name, kw) for kw in keywords)


def matches_detection(drug_name: str, keywords, mode: str = "any") -> bool:
    """Detection keywords under ANY / ALL semantics. No keywords never matches."""
    keywords = [kw for kw in keywords if normalize_drug_name(kw)]
    if not keywords:
        return False
    if mode == "all":
        return all(keyword_matches(drug_name, kw) for kw in keywords)
    return matches_any(drug_name, keywords)


def search_tokens(term: str | None, *, drop_noise: bool = True) -> list[str]:
    """
    Split a free-text search term into the tokens that must all be present.

    >>> search_tokens("Losartan Potassium 50 MG Tablet")
    ['LOSARTAN', 'TABLET']
    """
    if not term:
        return []
    tokens = []
    for raw in _TERM_SPLIT.split(term):
        word = raw.strip().upper()
        if len(word) < 2:
            continue
        if drop_noise and (word in NOISE_TOKENS or _DIGITS.match(word)):
            continue
        if word not in tokens:
            tokens.append(word)
    return tokens


def build_search_terms(terms, *, drop_noise: bool = True) -> list[list[str]]:
    """Tokenize every term, dropping the ones left without tokens."""
    groups = []
    for term in terms or []:
        tokens = search_tokens(term, drop_noise=drop_noise)
        if tokens:
            groups.append(tokens)
    return groups


def term_matches(drug_name: str, tokens: list[str]) -> bool:
    """AND within a term. Plain substring test on the upper-cased name."""
    upper = (drug_name or "").upper()
    return all(token in upper for token in tokens)


def terms_match(drug_name: str, term_groups: list[list[str]]) -> bool:
    """OR across terms."""
    return any(term_matches(drug_name, tokens) for tokens in term_groups)
