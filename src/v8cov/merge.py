"""Sum V8 block coverage across several process coverage records.

Scripts are matched by url, functions by their root range, and the nested
ranges of each function are combined as trees so that counts for the same
byte span add up no matter how each process happened to split its blocks.

The result is canonical: scripts sorted by url, functions by root range,
and ranges normalized so equal inputs always produce equal outputs.
"""


class RangeTree:
    """A byte range with a count relative to its parent (delta)."""

    def __init__(self, start, end, delta, children):
        self.start = start
        self.end = end
        self.delta = delta
        self.children = children

    def __repr__(self):
        return f"RangeTree({self.start}, {self.end}, {self.delta}, {self.children!r})"

    @classmethod
    def from_sorted_ranges(cls, ranges):
        root = None
        stack = []  # (tree, absolute count)
        for r in ranges:
            node = cls(r["startOffset"], r["endOffset"], r["count"], [])
            if root is None:
                root = node
                stack.append((node, r["count"]))
                continue
            while True:
                parent, parent_count = stack[-1]
                if r["startOffset"] < parent.end:
                    break
                stack.pop()
            node.delta -= parent_count
            parent.children.append(node)
            stack.append((node, r["count"]))
        return root

    def normalize(self):
        """Fuse adjacent siblings with equal deltas and fold a full-span child."""
        children = []
        head = None
        tail = []
        cur_end = None

        def end_chain():
            if tail:
                head.end = tail[-1].end
                for tail_tree in tail:
                    for sub_child in tail_tree.children:
                        sub_child.delta += tail_tree.delta - head.delta
                        head.children.append(sub_child)
                del tail[:]
            head.normalize()
            children.append(head)

        for child in self.children:
            if head is None:
                head = child
            elif child.delta == head.delta and child.start == cur_end:
                tail.append(child)
            else:
                end_chain()
                head = child
            cur_end = child.end
        if head is not None:
            end_chain()

        if len(children) == 1:
            child = children[0]
            if child.start == self.start and child.end == self.end:
                self.delta += child.delta
                self.children = child.children
                return
        self.children = children

    def split(self, value):
        """Cut this tree at value; self keeps the left part, the right is returned."""
        left_len = len(self.children)
        mid = None
        for i, child in enumerate(self.children):
            if child.start < value < child.end:
                mid = child.split(value)
                left_len = i + 1
                break
            if child.start >= value:
                left_len = i
                break
        right_children = self.children[left_len:]
        del self.children[left_len:]
        if mid is not None:
            right_children.insert(0, mid)
        result = RangeTree(value, self.end, self.delta, right_children)
        self.end = value
        return result

    def to_ranges(self):
        ranges = []
        stack = [(self, 0)]
        while stack:
            cur, parent_count = stack.pop()
            count = parent_count + cur.delta
            ranges.append({"startOffset": cur.start, "endOffset": cur.end, "count": count})
            for child in reversed(cur.children):
                stack.append((child, count))
        return ranges


def _range_sort_key(r):
    # Outer ranges first when two ranges start at the same offset
    return (r["startOffset"], -r["endOffset"])


def _root_range_key(func_cov):
    root = func_cov["ranges"][0]
    return (root["startOffset"], root["endOffset"])


def normalize_function_cov(func_cov):
    func_cov["ranges"].sort(key=_range_sort_key)
    tree = RangeTree.from_sorted_ranges(func_cov["ranges"])
    tree.normalize()
    func_cov["ranges"] = tree.to_ranges()


def normalize_script_cov(script_cov):
    script_cov["functions"].sort(key=lambda f: _range_sort_key(f["ranges"][0]))


def deep_normalize_script_cov(script_cov):
    for func_cov in script_cov["functions"]:
        normalize_function_cov(func_cov)
    normalize_script_cov(script_cov)


def normalize_process_cov(process_cov):
    process_cov["result"].sort(key=lambda s: s["url"])
    for script_id, script_cov in enumerate(process_cov["result"]):
        script_cov["scriptId"] = str(script_id)


class _StartEvent:
    def __init__(self, offset, trees):
        self.offset = offset
        self.trees = trees  # [(parent index, tree)]


class _StartEventQueue:
    """Child start offsets across all parents, plus a pending split remainder."""

    def __init__(self, queue):
        self.queue = queue
        self.next_index = 0
        self.pending_offset = 0
        self.pending_trees = None

    @classmethod
    def from_parent_trees(cls, parent_trees):
        start_to_trees = {}
        for parent_index, parent in enumerate(parent_trees):
            for child in parent.children:
                start_to_trees.setdefault(child.start, []).append((parent_index, child))
        queue = [_StartEvent(offset, trees) for offset, trees in start_to_trees.items()]
        queue.sort(key=lambda event: event.offset)
        return cls(queue)

    def set_pending_offset(self, offset):
        self.pending_offset = offset

    def push_pending_tree(self, tree):
        if self.pending_trees is None:
            self.pending_trees = []
        self.pending_trees.append(tree)

    def next(self):
        pending = self.pending_trees
        next_event = self.queue[self.next_index] if self.next_index < len(self.queue) else None
        if pending is None:
            self.next_index += 1
            return next_event
        if next_event is None or self.pending_offset < next_event.offset:
            self.pending_trees = None
            return _StartEvent(self.pending_offset, pending)
        if self.pending_offset == next_event.offset:
            self.pending_trees = None
            next_event.trees.extend(pending)
        self.next_index += 1
        return next_event


def _insert_child(parent_to_nested, parent_index, tree):
    parent_to_nested.setdefault(parent_index, []).append(tree)


def _next_child(open_start, open_end, parent_to_nested):
    matching = []
    for nested in parent_to_nested.values():
        if len(nested) == 1 and nested[0].start == open_start and nested[0].end == open_end:
            matching.append(nested[0])
        else:
            matching.append(RangeTree(open_start, open_end, 0, nested))
    parent_to_nested.clear()
    return _merge_range_trees(matching)


def _merge_range_tree_children(parent_trees):
    result = []
    queue = _StartEventQueue.from_parent_trees(parent_trees)
    parent_to_nested = {}
    open_range = None  # (start, end)

    while True:
        event = queue.next()
        if event is None:
            break

        if open_range is not None and open_range[1] <= event.offset:
            result.append(_next_child(open_range[0], open_range[1], parent_to_nested))
            open_range = None

        if open_range is None:
            open_end = event.offset + 1
            for parent_index, tree in event.trees:
                open_end = max(open_end, tree.end)
                _insert_child(parent_to_nested, parent_index, tree)
            queue.set_pending_offset(open_end)
            open_range = (event.offset, open_end)
        else:
            for parent_index, tree in event.trees:
                if tree.end > open_range[1]:
                    right = tree.split(open_range[1])
                    queue.push_pending_tree((parent_index, right))
                _insert_child(parent_to_nested, parent_index, tree)

    if open_range is not None:
        result.append(_next_child(open_range[0], open_range[1], parent_to_nested))
    return result


def _merge_range_trees(trees):
    if len(trees) <= 1:
        return trees[0] if trees else None
    first = trees[0]
    delta = sum(tree.delta for tree in trees)
    children = _merge_range_tree_children(trees)
    return RangeTree(first.start, first.end, delta, children)


def merge_function_covs(func_covs):
    """Merge coverages of the same function (same root range)."""
    if not func_covs:
        return None
    if len(func_covs) == 1:
        merged = func_covs[0]
        normalize_function_cov(merged)
        return merged

    trees = []
    for func_cov in func_covs:
        ranges = sorted(func_cov["ranges"], key=_range_sort_key)
        trees.append(RangeTree.from_sorted_ranges(ranges))
    merged_tree = _merge_range_trees(trees)
    merged_tree.normalize()
    ranges = merged_tree.to_ranges()
    is_block_coverage = not (len(ranges) == 1 and ranges[0]["count"] == 0)
    return {
        "functionName": func_covs[0]["functionName"],
        "ranges": ranges,
        "isBlockCoverage": is_block_coverage,
    }


def merge_script_covs(script_covs):
    """Merge coverages of the same script (same url)."""
    if not script_covs:
        return None
    if len(script_covs) == 1:
        merged = script_covs[0]
        deep_normalize_script_cov(merged)
        return merged

    first = script_covs[0]
    range_to_funcs = {}
    for script_cov in script_covs:
        for func_cov in script_cov["functions"]:
            root_range = _root_range_key(func_cov)
            func_covs = range_to_funcs.get(root_range)
            if func_covs is None or (
                not func_covs[0]["isBlockCoverage"] and func_cov["isBlockCoverage"]
            ):
                # Block-level granularity replaces function-level granularity
                func_covs = []
                range_to_funcs[root_range] = func_covs
            elif func_covs[0]["isBlockCoverage"] and not func_cov["isBlockCoverage"]:
                continue
            func_covs.append(func_cov)

    functions = [merge_function_covs(func_covs) for func_covs in range_to_funcs.values()]
    merged = {"scriptId": first.get("scriptId", "0"), "url": first["url"], "functions": functions}
    normalize_script_cov(merged)
    return merged


def merge_process_covs(process_covs):
    """Merge process coverages into a single process coverage.

    Args:
        process_covs: Validated process coverage dicts. Their script and
            function entries may be reused (and normalized in place) in
            the result.

    Returns:
        Dict {"result": [script coverage, ...]} holding the summed counts.
    """
    url_to_scripts = {}
    for process_cov in process_covs:
        for script_cov in process_cov["result"]:
            url_to_scripts.setdefault(script_cov["url"], []).append(script_cov)

    result = [merge_script_covs(scripts) for scripts in url_to_scripts.values()]
    merged = {"result": result}
    normalize_process_cov(merged)
    return merged
