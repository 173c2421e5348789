import unittest

from storygraph.text_similarity import (
    article_similarity,
    cosine,
    is_stopword,
    jaccard,
    similarity,
    tokenize,
)


class TestTokenize(unittest.TestCase):
    def test_lowercases_and_strips_punctuation(self) -> None:
        self.assertEqual(tokenize("Quick, BROWN fox!"), ["quick", "brown", "fox"])

    def test_drops_stopwords_and_short_tokens(self) -> None:
        self.assertEqual(tokenize("The AI said it was over for the EU bank"), ["bank"])
        self.assertTrue(is_stopword("according"))
        self.assertFalse(is_stopword("merger"))

    def test_keeps_order_and_duplicates(self) -> None:
        self.assertEqual(tokenize("merger talks, merger vote"), ["merger", "talks", "merger", "vote"])

    def test_empty_and_none(self) -> None:
        self.assertEqual(tokenize(""), [])
        self.assertEqual(tokenize(None), [])
        self.assertEqual(tokenize("the and of"), [])

    def test_underscore_and_digits_are_word_characters(self) -> None:
        self.assertEqual(tokenize("covid_19 cases hit 2026"), ["covid_19", "cases", "hit", "2026"])


class TestSimilarity(unittest.TestCase):
    def test_identical_token_lists_score_one(self) -> None:
        toks = ["volcano", "erupts", "iceland", "volcano"]
        self.assertAlmostEqual(similarity(toks, list(toks)), 1.0, places=9)
        self.assertLessEqual(cosine(toks, list(toks)), 1.0)

    def test_disjoint_token_lists_score_zero(self) -> None:
        self.assertEqual(similarity(["alpha", "beta"], ["gamma", "delta"]), 0.0)

    def test_empty_inputs_score_zero(self) -> None:
        self.assertEqual(jaccard([], []), 0.0)
        self.assertEqual(cosine([], ["alpha"]), 0.0)
        self.assertEqual(similarity([], []), 0.0)

    def test_partial_overlap(self) -> None:
        a = ["aaa", "bbb"]
        b = ["bbb", "ccc"]
        self.assertAlmostEqual(jaccard(a, b), 1 / 3)
        self.assertAlmostEqual(cosine(a, b), 0.5)
        self.assertAlmostEqual(similarity(a, b), (1 / 3 + 0.5) / 2)

    def test_cosine_uses_term_frequency(self) -> None:
        # Same set, different counts: Jaccard is 1 but cosine is not.
        a = ["storm", "storm", "storm", "coast"]
        b = ["storm", "coast", "coast", "coast"]
        self.assertEqual(jaccard(a, b), 1.0)
        self.assertAlmostEqual(cosine(a, b), 6 / 10)

    def test_symmetric_and_bounded(self) -> None:
        a = tokenize("Central bank raises interest rates amid inflation")
        b = tokenize("Inflation fears push central bank to raise rates")
        s = similarity(a, b)
        self.assertAlmostEqual(s, similarity(b, a))
        self.assertGreater(s, 0.0)
        self.assertLess(s, 1.0)

    def test_article_similarity_uses_title_and_excerpt(self) -> None:
        a = {"title": "Volcano erupts", "excerpt": "Lava reaches village"}
        b = {"title": "Lava reaches village", "excerpt": "Volcano erupts"}
        self.assertAlmostEqual(article_similarity(a, b), 1.0, places=9)
        self.assertEqual(article_similarity({"title": None, "excerpt": None}, a), 0.0)


if __name__ == "__main__":
    unittest.main()
