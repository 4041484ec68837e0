"""Run several fuzz engines side by side and keep their corpora in sync."""