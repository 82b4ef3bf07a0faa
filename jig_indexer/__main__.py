from jig_indexer.main import main

main()
