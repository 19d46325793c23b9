import pickle
import unittest

import numpy as np

from mosaic_align.alignment._point_cache import PointIdentityCache
from mosaic_align.alignment._point_match import Point, PointMatch


class PointIdentityCacheTest(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = PointIdentityCache()
        self.points = [Point([float(i), 0.0]) for i in range(3)]
        self.cache.register(self.points)

    def test_register_assigns_unique_ids(self) -> None:
        ids = [p.id for p in self.points]
        self.assertNotIn(0, ids)
        self.assertEqual(len(set(ids)), 3)
        self.assertEqual(len(self.cache), 3)
        self.assertIn(ids[0], self.cache)

        kept = self.points[0].id
        self.cache.register([self.points[0]])
        self.assertEqual(self.points[0].id, kept)

    def test_copies_merge_into_canonical_instance(self) -> None:
        original = self.points[1]
        copy = pickle.loads(pickle.dumps(original))
        copy.world[:] = [7.0, 8.0]
        self.assertIsNot(copy, original)

        canonical = self.cache.canonical(copy)
        self.assertIs(canonical, original)
        np.testing.assert_array_equal(original.world, [7.0, 8.0])

    def test_synchronize_rewires_matches(self) -> None:
        match = pickle.loads(pickle.dumps(PointMatch(self.points[0], Point([5.0, 5.0]))))
        self.cache.synchronize([match])
        self.assertIs(match.p1, self.points[0])
        # unregistered points get a fresh id and become canonical
        self.assertNotEqual(match.p2.id, 0)
        self.assertNotIn(match.p2.id, [p.id for p in self.points])
        self.assertIs(self.cache.get(match.p2.id), match.p2)

    def test_fresh_ids_are_assigned_once(self) -> None:
        point = Point([2.0, 3.0])
        self.assertIs(self.cache.canonical(point), point)
        first = point.id
        self.assertIs(self.cache.canonical(point), point)
        self.assertEqual(point.id, first)
        self.assertEqual(len(self.cache), 4)

    def test_unknown_id_is_returned_as_is(self) -> None:
        stranger = Point([1.0, 1.0], id=10 ** 9)
        self.assertIs(self.cache.canonical(stranger), stranger)

    def test_sync_points(self) -> None:
        returned = [Point([9.0, float(i)]) for i in range(3)]
        PointIdentityCache.sync_points(self.points, returned)
        np.testing.assert_array_equal(self.points[2].local, [9.0, 2.0])
        with self.assertRaises(ValueError):
            PointIdentityCache.sync_points(self.points, returned[:2])

    def test_clear(self) -> None:
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)
        self.assertIsNone(self.cache.get(self.points[0].id))
