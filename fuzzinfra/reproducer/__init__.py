"""Place for solution reproduction; it currently holds no modules."""