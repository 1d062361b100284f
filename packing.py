"""Rectangle packing by empty-space splitting with a best-bin search (no rotation).

Every rectangle is placed in the last empty space it fits into; the space is removed and the
leftover area is split into at most two new spaces. The bin search shrinks/grows a square
candidate bin by halving steps, then tries to shave off width and height separately (also
starting from full-width and full-height strips). This is repeated for several orderings of
the input and the ordering giving the smallest bin wins.
"""

from dataclasses import dataclass, field
from typing import Callable, Sequence

Size = tuple[int, int]  # (w, h)


@dataclass
class Rect:
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h


@dataclass
class PackedRect(Rect):
    index: int = -1  # position of the rectangle in the input sequence


@dataclass
class Packing:
    width: int
    height: int
    rects: list[PackedRect] = field(default_factory=list)  # in packing order, not input order
    unpacked: list[int] = field(default_factory=list)  # input indices that could not be placed

    @property
    def num_unpacked(self) -> int:
        return len(self.unpacked)


def _split(im: Size, sp: Rect) -> list[Rect] | None:
    """Spaces left over after placing `im` in the top-left corner of `sp`, or None if it does not fit."""
    w, h = im
    free_w = sp.w - w
    free_h = sp.h - h
    if free_w < 0 or free_h < 0:
        return None
    if free_w == 0 and free_h == 0:
        return []
    if free_h == 0:
        return [Rect(sp.x + w, sp.y, free_w, sp.h)]
    if free_w == 0:
        return [Rect(sp.x, sp.y + h, sp.w, free_h)]
    # strictly smaller in both dimensions: keep the bigger split as large as possible
    if free_w > free_h:
        return [Rect(sp.x + w, sp.y, free_w, sp.h), Rect(sp.x, sp.y + h, w, free_h)]
    return [Rect(sp.x, sp.y + h, sp.w, free_h), Rect(sp.x + w, sp.y, free_w, h)]


class EmptySpaces:
    """Free space bookkeeping for a single bin."""

    def __init__(self, w: int = 0, h: int = 0):
        self.reset(w, h)

    def reset(self, w: int, h: int) -> None:
        self.spaces = [Rect(0, 0, w, h)]
        self.aabb_w = 0
        self.aabb_h = 0

    def insert(self, im: Size) -> Rect | None:
        """Place a rectangle of size `im`; returns its position or None if no space fits."""
        for i in range(len(self.spaces) - 1, -1, -1):
            sp = self.spaces[i]
            splits = _split(im, sp)
            if splits is None:
                continue
            # remove by swapping with the last space
            self.spaces[i] = self.spaces[-1]
            self.spaces.pop()
            self.spaces.extend(splits)
            placed = Rect(sp.x, sp.y, im[0], im[1])
            self.aabb_w = max(self.aabb_w, placed.x + placed.w)
            self.aabb_h = max(self.aabb_h, placed.y + placed.h)
            return placed
        return None


def _pathological_mult(s: Size) -> int:
    w, h = s
    return max(w, h) // max(1, min(w, h)) * w * h


ORDERINGS: dict[str, Callable[[Size], int]] = {
    "area": lambda s: s[0] * s[1],
    "perimeter": lambda s: 2 * s[0] + 2 * s[1],
    "max_side": lambda s: max(s),
    "width": lambda s: s[0],
    "height": lambda s: s[1],
    "pathological": _pathological_mult,
}


def _try_bins(
    root: EmptySpaces, sizes: list[Size], starting_bin: Size, discard_step: int, dimension: str
) -> Size | int:
    """Smallest bin (w, h) found for this ordering, or the total inserted area if even `starting_bin` fails."""
    bin_w, bin_h = starting_bin
    tries_before_discarding = 0
    if discard_step <= 0:
        tries_before_discarding = -discard_step
        discard_step = 1

    if dimension == "both":
        bin_w //= 2
        bin_h //= 2
        step = bin_w // 2
    elif dimension == "width":
        bin_w //= 2
        step = bin_w // 2
    else:
        bin_h //= 2
        step = bin_h // 2

    while True:
        root.reset(bin_w, bin_h)
        total_inserted_area = 0
        all_inserted = True
        for s in sizes:
            if root.insert(s) is None:
                all_inserted = False
                break
            total_inserted_area += s[0] * s[1]

        if all_inserted:
            # success: try a smaller bin
            if step <= discard_step:
                if tries_before_discarding > 0:
                    tries_before_discarding -= 1
                else:
                    return bin_w, bin_h
            if dimension in ("both", "width"):
                bin_w -= step
            if dimension in ("both", "height"):
                bin_h -= step
        else:
            # failure: grow, unless that would exceed the starting bin
            if dimension == "both":
                bin_w += step
                bin_h += step
                if bin_w * bin_h > starting_bin[0] * starting_bin[1]:
                    return total_inserted_area
            elif dimension == "width":
                bin_w += step
                if bin_w > starting_bin[0]:
                    return total_inserted_area
            else:
                bin_h += step
                if bin_h > starting_bin[1]:
                    return total_inserted_area

        step = max(1, step // 2)


def _best_bin_for_ordering(root: EmptySpaces, sizes: list[Size], max_bin: Size, discard_step: int) -> Size | int:
    result = _try_bins(root, sizes, max_bin, discard_step, "both")
    if isinstance(result, int):
        return result

    # refine the square bin, and also try wide and tall strips starting from the full bin
    candidates = []
    for start, dimensions in (
        (result, ("width", "height")),
        (max_bin, ("height", "width")),
        (max_bin, ("width", "height")),
    ):
        best_bin = start
        for dimension in dimensions:
            trial = _try_bins(root, sizes, best_bin, discard_step, dimension)
            if not isinstance(trial, int):
                best_bin = trial
        candidates.append(best_bin)
    return min(candidates, key=lambda b: b[0] * b[1])


def pack_rectangles(sizes: Sequence[Size], max_side: int = 2000, discard_step: int = -4) -> Packing:
    """Pack rectangles of the given (w, h) sizes into the smallest bin found, at most max_side x max_side.

    Rectangles that cannot be placed even in the largest bin are listed in `Packing.unpacked`;
    all other rectangles still get valid, non-overlapping positions.
    """
    sizes = [(int(w), int(h)) for w, h in sizes]
    if not sizes:
        return Packing(0, 0)
    if max_side < 1:
        raise ValueError(f"max_side must be >= 1, got {max_side}")

    max_bin = (max_side, max_side)
    root = EmptySpaces()

    best_order: list[int] | None = None
    best_bin = max_bin
    best_packed = False
    best_total_inserted = -1
    for name, key in ORDERINGS.items():
        order = sorted(range(len(sizes)), key=lambda i: key(sizes[i]), reverse=True)
        result = _best_bin_for_ordering(root, [sizes[i] for i in order], max_bin, discard_step)
        if isinstance(result, int):
            # remember which ordering inserts the most area, in case every ordering fails
            if not best_packed and result > best_total_inserted:
                best_order, best_total_inserted = order, result
        elif result[0] * result[1] <= best_bin[0] * best_bin[1] or not best_packed:
            best_order, best_bin, best_packed = order, result, True

    assert best_order is not None
    root.reset(*best_bin)
    rects, unpacked = [], []
    for i in best_order:
        placed = root.insert(sizes[i])
        if placed is None:
            unpacked.append(i)
        else:
            rects.append(PackedRect(placed.x, placed.y, placed.w, placed.h, index=i))
    unpacked.sort()
    return Packing(root.aabb_w, root.aabb_h, rects, unpacked)
