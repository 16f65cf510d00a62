import unittest

from tanuki.utils.similarity import jaccard_similarity, shared_tags


class TestJaccardSimilarity(unittest.TestCase):
    def test_identical_and_disjoint(self):
        self.assertEqual(jaccard_similarity(["a", "b"], ["b", "a"]), 1.0)
        self.assertEqual(jaccard_similarity(["a"], ["b"]), 0.0)

    def test_partial_overlap_is_symmetric(self):
        self.assertAlmostEqual(jaccard_similarity(["a", "b"], ["a", "c"]), 1 / 3)
        self.assertEqual(jaccard_similarity(["a", "b", "c"], ["a"]), jaccard_similarity(["a"], ["a", "b", "c"]))

    def test_empty_sets(self):
        self.assertEqual(jaccard_similarity([], []), 0.0)
        self.assertEqual(jaccard_similarity(["a"], []), 0.0)

    def test_duplicates_are_ignored(self):
        self.assertEqual(jaccard_similarity(["a", "a", "b"], ["a", "b"]), 1.0)


class TestSharedTags(unittest.TestCase):
    def test_order_follows_first_argument(self):
        self.assertEqual(shared_tags(["c", "a", "b", "a"], ["a", "b", "z"]), ["a", "b"])
        self.assertEqual(shared_tags(["x"], ["y"]), [])


if __name__ == "__main__":
    unittest.main()
